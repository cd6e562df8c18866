"""
Error taxonomy for the resolution and refresh engine.

Only conditions that leave nothing to serve (store or cache unreachable,
gate setup failure) propagate as exceptions to callers. "Could not find or
refresh this one thing" conditions become typed results.
"""


class ProviderError(Exception):
    """Base class for provider failures"""

    def __init__(self, provider: str, message: str, reason: str = "provider_unknown"):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.reason = reason


class TransientProviderError(ProviderError):
    """Timeout, network or 5xx from one provider. The chain moves on."""


class NotFoundError(Exception):
    """Identifier unknown across the whole provider chain"""

    def __init__(self, identifier: str):
        super().__init__(f"Instrument not found: {identifier}")
        self.identifier = identifier


class MalformedFeedError(ValueError):
    """One unparsable record in a batch feed"""

    def __init__(self, line_no: int, line: str, message: str):
        super().__init__(f"line {line_no}: {message}")
        self.line_no = line_no
        self.line = line


class ResourceUnavailableError(Exception):
    """Cache or persistent store unreachable"""

    def __init__(self, resource: str, message: str):
        super().__init__(f"{resource} unavailable: {message}")
        self.resource = resource


class SingleflightSetupError(ResourceUnavailableError):
    """Shared resource setup failed for every waiter of one attempt"""
