"""Tests for store retries, health checks, error mapping and logging context."""

import asyncio
import logging
import time

import pytest

from workflow_runtime.core.error_recovery import HealthChecker, RetryConfig, with_retry
from workflow_runtime.core.exceptions import (
    ConfigurationError,
    ExecutionNotFoundError,
    JobTimeoutError,
    StorageError,
    TransientError,
    WorkflowConfigurationError,
    create_error_response,
)
from workflow_runtime.core.logging import (
    ErrorRecoveryLogger,
    JsonFormatter,
    RunContextFilter,
    clear_logging_context,
    get_logging_context,
    set_logging_context,
)
from workflow_runtime.core.middleware import get_status_code_for_error
from workflow_runtime.models.core import BackoffPolicy, BackoffType

NO_WAIT = RetryConfig(max_attempts=3, backoff=BackoffPolicy(type=BackoffType.FIXED, delay=0), jitter=False)


class TestWithRetry:
    """Test the store retry decorator."""

    def test_storage_errors_retried(self):
        calls = []

        @with_retry(NO_WAIT)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StorageError("database is locked")
            return "saved"

        assert flaky() == "saved"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @with_retry(NO_WAIT)
        def broken():
            calls.append(1)
            raise TransientError("still down")

        with pytest.raises(TransientError):
            broken()
        assert len(calls) == 3

    def test_other_errors_not_retried(self):
        calls = []

        @with_retry(NO_WAIT)
        def missing():
            calls.append(1)
            raise ExecutionNotFoundError("exec-1")

        with pytest.raises(ExecutionNotFoundError):
            missing()
        assert len(calls) == 1

    def test_recoverable_flag_can_opt_out(self):
        config = RetryConfig(max_attempts=3)
        assert config.should_retry(StorageError("locked"), 1)
        assert not config.should_retry(StorageError("corrupt", recoverable=False), 1)
        assert not config.should_retry(StorageError("locked"), 3)

    def test_attempts_reported_by_recovery_logger(self, caplog):
        calls = []

        @with_retry(NO_WAIT)
        def flaky_save():
            calls.append(1)
            if len(calls) < 2:
                raise StorageError("database is locked")
            return "saved"

        with caplog.at_level(logging.INFO, logger="workflow_runtime.retry"):
            assert flaky_save() == "saved"

        messages = [record.getMessage() for record in caplog.records if record.name.startswith("workflow_runtime.retry")]
        assert any("failed on attempt 1/3" in message for message in messages)
        assert any("succeeded after 2 attempts" in message for message in messages)
        assert isinstance(ErrorRecoveryLogger("save").logger, logging.Logger)

    def test_delay_follows_backoff_policy(self):
        config = RetryConfig(backoff=BackoffPolicy(delay=0.5, max_delay=1.5), jitter=False)
        assert [config.get_delay(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 1.5]

        jittered = RetryConfig(backoff=BackoffPolicy(delay=1.0), jitter=True).get_delay(1)
        assert 0.5 <= jittered <= 1.0


class TestHealthChecker:
    """Test named component checks."""

    def test_all_checks_healthy(self):
        checker = HealthChecker()
        checker.register_check("database", lambda: "Database connection healthy")
        checker.register_check("queue", lambda: {"lanes": 2})

        results = asyncio.run(checker.run_all_checks())

        assert results["overall_status"] == "healthy"
        assert results["checks"]["database"]["message"] == "Database connection healthy"
        assert results["checks"]["queue"]["lanes"] == 2
        assert "duration_ms" in results["checks"]["queue"]

    def test_failing_check(self):
        def broken():
            raise RuntimeError("no connection")

        checker = HealthChecker()
        checker.register_check("database", broken)

        results = asyncio.run(checker.run_all_checks())

        assert results["overall_status"] == "unhealthy"
        assert results["checks"]["database"]["status"] == "unhealthy"
        assert results["checks"]["database"]["error_type"] == "RuntimeError"
        assert checker.last_results["database"]["message"] == "no connection"

    def test_slow_check_times_out(self):
        checker = HealthChecker()
        checker.register_check("slow", lambda: time.sleep(0.5), timeout=0.05)

        result = asyncio.run(checker.run_check("slow"))

        assert result["status"] == "timeout"

    def test_async_check_and_unknown_name(self):
        async def ping():
            return "pong"

        checker = HealthChecker()
        checker.register_check("ping", ping)

        assert asyncio.run(checker.run_check("ping"))["message"] == "pong"
        assert asyncio.run(checker.run_check("missing"))["status"] == "error"

        checker.unregister_check("ping")
        assert checker.checks == {}


class TestErrors:
    """Test exception defaults and HTTP mapping."""

    def test_class_defaults(self):
        assert StorageError("x").recoverable is True
        assert JobTimeoutError("job-1", 2.0).recoverable is True
        assert ConfigurationError("x").recoverable is False
        assert ConfigurationError("x", recoverable=True).recoverable is True

    def test_context_and_details(self):
        error = WorkflowConfigurationError("No starting nodes found in workflow", workflow_id="wf-1",
                                           problems=["No starting nodes found in workflow"])
        as_dict = error.to_dict()

        assert as_dict["context"] == {"workflow_id": "wf-1"}
        assert as_dict["details"]["problems"] == ["No starting nodes found in workflow"]
        assert as_dict["category"] == "configuration"

    def test_error_response(self):
        response = create_error_response(StorageError("locked", operation="save"))
        assert response["error"] == "StorageError"
        assert response["details"]["retry_after"] == 3
        assert response["context"] == {"operation": "save"}

    def test_status_codes(self):
        assert get_status_code_for_error(ExecutionNotFoundError("x")) == 404
        assert get_status_code_for_error(WorkflowConfigurationError("x")) == 400
        assert get_status_code_for_error(StorageError("x")) == 503
        assert get_status_code_for_error(ConfigurationError("x")) == 500


class TestLoggingContext:
    """Test per-thread run context on log records."""

    def setup_method(self):
        clear_logging_context()

    def teardown_method(self):
        clear_logging_context()

    def test_context_stamped_on_records(self):
        context_filter = RunContextFilter()
        context_filter.bind(execution_id="exec-1", node_id=None)
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)

        context_filter.filter(record)

        assert record.extra_fields == {"execution_id": "exec-1"}
        assert record.run_context == " [execution_id=exec-1]"

    def test_json_formatter_includes_context(self):
        context_filter = RunContextFilter()
        context_filter.bind(job_id="run:1")
        record = logging.LogRecord("test", logging.WARNING, __file__, 1, "slow %s", ("job",), None)
        context_filter.filter(record)

        line = JsonFormatter().format(record)

        assert '"job_id": "run:1"' in line
        assert '"message": "slow job"' in line

    def test_module_level_helpers(self):
        set_logging_context(execution_id="exec-2")
        assert get_logging_context() == {"execution_id": "exec-2"}
        clear_logging_context()
        assert get_logging_context() == {}
