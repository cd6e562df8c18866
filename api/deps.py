"""Shared router dependencies"""
from fastapi import Request

from services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
