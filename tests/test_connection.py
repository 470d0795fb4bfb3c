"""Tests for retry policies and timing helpers."""
import asyncio
import logging

import pytest

from vm_disk_attachments.stores import NotFoundFailure, RemoteFailure, StoreConfig
from vm_disk_attachments.utils.connection import (
    RetryStrategy,
    is_transient,
    with_retry,
)
from vm_disk_attachments.utils.logging_config import (
    APP_LOGGERS,
    LogSettings,
    perf_logger,
    setup_logging,
    timed,
    timed_section,
)

FAST = dict(min_wait=0, max_wait=0)


class Flaky:
    """Async callable failing a fixed number of times."""

    def __init__(self, failures: list[BaseException]):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self, value: str) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return value


class TestRetryStrategy:
    """Tests for RetryStrategy.run."""

    @pytest.mark.asyncio
    async def test_success_no_retry(self):
        func = Flaky([])

        assert await RetryStrategy(**FAST).run(func, "ok") == "ok"
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_transient_retried(self):
        """Transient failures are retried until success."""
        func = Flaky([RemoteFailure("op", "busy", transient=True)] * 2)

        result = await RetryStrategy(max_attempts=3, **FAST).run(func, "ok")

        assert result == "ok"
        assert func.calls == 3

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self):
        """The last failure is re-raised unchanged."""
        last = RemoteFailure("op", "still busy", transient=True)
        func = Flaky([RemoteFailure("op", "busy", transient=True), last])

        with pytest.raises(RemoteFailure) as exc:
            await RetryStrategy(max_attempts=2, **FAST).run(func, "ok")

        assert exc.value is last
        assert func.calls == 2

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self):
        func = Flaky([NotFoundFailure("op", "gone")])

        with pytest.raises(NotFoundFailure):
            await RetryStrategy(max_attempts=5, **FAST).run(func, "ok")
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_none_is_single_attempt(self):
        func = Flaky([RemoteFailure("op", "busy", transient=True)])

        with pytest.raises(RemoteFailure):
            await RetryStrategy.none().run(func, "ok")
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        """A timed-out attempt is retried."""
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "done"

        strategy = RetryStrategy(max_attempts=2, timeout=0.01, **FAST)

        assert await strategy.run(slow_then_fast) == "done"
        assert calls == 2

    @pytest.mark.asyncio
    async def test_cancellation_not_retried(self):
        """Cancellation propagates on the first attempt."""
        func = Flaky([asyncio.CancelledError()])

        with pytest.raises(asyncio.CancelledError):
            await RetryStrategy(max_attempts=3, **FAST).run(func, "ok")
        assert func.calls == 1

    def test_from_config(self):
        config = StoreConfig(
            type="ovirt", retries=4, retry_min_wait=2, retry_max_wait=8, timeout=15
        )

        strategy = RetryStrategy.from_config(config)

        assert strategy == RetryStrategy(max_attempts=4, min_wait=2, max_wait=8, timeout=15)

    def test_from_config_at_least_one_attempt(self):
        config = StoreConfig(type="ovirt", retries=0)

        assert RetryStrategy.from_config(config).max_attempts == 1

    def test_is_transient(self):
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(RemoteFailure("op", "x", transient=True))
        assert not is_transient(RemoteFailure("op", "x"))
        assert not is_transient(ValueError("x"))


class TestWithRetry:
    """Tests for the connection retry decorator."""

    @pytest.mark.asyncio
    async def test_async_retry_then_success(self):
        """Async function retries on failure then succeeds."""
        call_count = 0

        @with_retry(max_attempts=3, **FAST)
        async def failing_then_succeeding():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionRefusedError("Connection refused")
            return "connected"

        assert await failing_then_succeeding() == "connected"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_exception(self):
        """Non-retryable exceptions are not retried."""
        call_count = 0

        @with_retry(max_attempts=3, exceptions=(ConnectionRefusedError,))
        async def raising_value_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("Not retryable")

        with pytest.raises(ValueError):
            await raising_value_error()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_max_retries_exceeded(self):
        """The last failure is raised after max retries."""
        call_count = 0

        @with_retry(max_attempts=2, **FAST)
        async def always_failing():
            nonlocal call_count
            call_count += 1
            raise TimeoutError("Always times out")

        with pytest.raises(TimeoutError):
            await always_failing()
        assert call_count == 2

    def test_rejects_sync(self):
        with pytest.raises(TypeError):
            @with_retry()
            def not_async():
                pass


class TestTiming:
    """Tests for the perf logging helpers."""

    @pytest.mark.asyncio
    async def test_timed_logs_vm(self, caplog):
        """timed logs the operation and the VM of the call."""

        class Probe:
            @timed("probe")
            async def run(self, vm_id: str) -> str:
                return vm_id

        propagate = perf_logger.propagate
        perf_logger.propagate = True
        try:
            with caplog.at_level(logging.INFO, logger=perf_logger.name):
                assert await Probe().run("vm-7") == "vm-7"
        finally:
            perf_logger.propagate = propagate

        assert "probe" in caplog.text
        assert "vm-7" in caplog.text

    def test_timed_rejects_sync(self):
        with pytest.raises(TypeError):
            @timed("sync")
            def not_async():
                pass

    @pytest.mark.asyncio
    async def test_timed_section_reraises(self):
        with pytest.raises(RuntimeError):
            async with timed_section("phase", vm_id="vm-1", entries=2):
                raise RuntimeError("boom")


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture
    def settings(self, tmp_path):
        yield LogSettings(level=logging.WARNING, file=tmp_path / "logs" / "diskattach.log")
        for name in APP_LOGGERS + (perf_logger.name,):
            target = logging.getLogger(name)
            for handler in [h for h in target.handlers if getattr(h, "_diskattach", False)]:
                target.removeHandler(handler)
                handler.close()
        perf_logger.propagate = True

    def test_creates_log_files(self, settings):
        setup_logging(settings)

        assert settings.file.exists()
        assert settings.perf_file.exists()

    def test_repeated_setup_replaces_handlers(self, settings):
        """Handlers are not stacked by repeated calls."""
        setup_logging(settings)
        setup_logging(settings)

        assert len(logging.getLogger("diskattach").handlers) == 2
        assert len(perf_logger.handlers) == 1

    def test_settings_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DISKATTACH_LOG_LEVEL", "debug")
        monkeypatch.setenv("DISKATTACH_LOG_FILE", str(tmp_path / "x.log"))
        monkeypatch.setenv("DISKATTACH_LOG_BACKUPS", "2")

        settings = LogSettings.from_env()

        assert settings.level == logging.DEBUG
        assert settings.file == tmp_path / "x.log"
        assert settings.backups == 2
        assert settings.perf_file == tmp_path / "diskattach-perf.log"
