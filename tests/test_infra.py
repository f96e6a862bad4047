"""Engine URL mapping, the DB gate and the timing window."""

import asyncio

import pytest

from boxoffice.infra import timings
from boxoffice.infra.sql import async_url, make_async_engine


class TestAsyncUrl:
    @pytest.mark.parametrize("url, expected", [
        ("sqlite:///./x.db", "sqlite+aiosqlite:///./x.db"),
        ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
        ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
        ("sqlite+aiosqlite:///./x.db", "sqlite+aiosqlite:///./x.db"),
    ])
    def test_driver_is_made_async(self, url, expected):
        assert async_url(url) == expected


class TestGate:
    @pytest.mark.asyncio
    async def test_gate_bounds_concurrent_holders(self, tmp_path,
                                                  monkeypatch):
        monkeypatch.setattr("boxoffice.infra.sql.DB_GATE_LIMIT", 2)
        handles = make_async_engine(f"sqlite:///{tmp_path / 'gate.db'}")
        inside = 0
        peak = 0

        async def worker():
            nonlocal inside, peak
            async with handles.gated():
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(6)))
        await handles.engine.dispose()

        assert peak == 2


class TestTimings:
    def setup_method(self):
        timings.reset()

    def teardown_method(self):
        timings.reset()

    @pytest.mark.asyncio
    async def test_snapshot_counts_samples_and_errors(self):
        async with timings.timeit("orders.create"):
            pass
        with pytest.raises(RuntimeError):
            async with timings.timeit("orders.create"):
                raise RuntimeError("boom")

        [row] = timings.snapshot()

        assert row["kind"] == "orders.create"
        assert row["n"] == 2
        assert row["errors"] == 1
        assert row["max"] >= row["p50"] >= 0

    def test_window_is_bounded(self):
        for i in range(timings.WINDOW + 10):
            timings.record_timing("inventory.reserve", float(i))

        [row] = timings.snapshot()

        assert row["n"] == timings.WINDOW
        assert row["max"] == float(timings.WINDOW + 9)
