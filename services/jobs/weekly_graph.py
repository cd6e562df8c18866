"""
Weekly chart aggregation (Sunday 02:00 Asia/Kolkata).

Rebuilds the 1Y/3Y/5Y weekly chart series of every active instrument in
batches, then drops series nobody has rebuilt for a month.
"""
import time

from models import utcnow

JOB_NAME = "weekly-graph"
BATCH_SIZE = 50
STALE_SERIES_DAYS = 30


class WeeklyChartJob:
    def __init__(self, chart_service, batch_size: int = BATCH_SIZE, stale_days: int = STALE_SERIES_DAYS):
        self.chart_service = chart_service
        self.batch_size = max(1, int(batch_size))
        self.stale_days = stale_days

    async def __call__(self, ctx) -> dict:
        start = time.monotonic()
        codes = await self.chart_service.active_codes()
        ctx.log("info", f"Aggregating chart series for {len(codes)} instruments")

        written = 0
        for i in range(0, len(codes), self.batch_size):
            batch = codes[i:i + self.batch_size]
            written += await self.chart_service.aggregate(batch)
            ctx.log("debug", f"Progress: {min(i + self.batch_size, len(codes))}/{len(codes)}")

        removed = await self.chart_service.cleanup(self.stale_days)
        if removed:
            ctx.log("info", f"Removed {removed} chart series not rebuilt in {self.stale_days} days")

        duration_ms = int((time.monotonic() - start) * 1000)
        return {
            "success": True,
            "total_instruments": len(codes),
            "series_written": written,
            "removed": removed,
            "duration": f"{duration_ms}ms",
            "timestamp": utcnow().isoformat(),
        }
