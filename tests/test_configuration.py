import json
import os
import tempfile
import time
import pytest
from rollout_engine.models import DeploymentConfig
from rollout_engine.errors import RegistryError
from rollout_engine.retry import RetryPolicy, call_with_retry


class FlakyCall:
    def __init__(self, failures, error=RegistryError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("flaky")
        return "ok"


class TestDeploymentConfig:
    """Configuration loading and validation tests."""

    def test_defaults(self):
        config = DeploymentConfig()
        assert config.poll_interval_s == 1.0
        assert config.health_timeout_s == 300.0
        assert config.launch_timeout_s is None
        assert config.retry_max_attempts == 3

    def test_from_dict(self):
        config = DeploymentConfig.from_dict({"poll_interval_s": 0.5, "health_timeout_s": 30})
        assert config.poll_interval_s == 0.5
        assert config.health_timeout_s == 30

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown config keys: bogus"):
            DeploymentConfig.from_dict({"bogus": 1})

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError, match="health_timeout_s must be > 0"):
            DeploymentConfig.from_dict({"health_timeout_s": 0})
        with pytest.raises(ValueError, match="retry_max_attempts must be >= 0"):
            DeploymentConfig.from_dict({"retry_max_attempts": -1})

    def test_from_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({"poll_interval_s": 2.0, "launch_timeout_s": 60}, f)
            temp_path = f.name

        try:
            config = DeploymentConfig.from_file(temp_path)
            assert config.poll_interval_s == 2.0
            assert config.launch_timeout_s == 60
        finally:
            os.unlink(temp_path)


class TestRetry:
    """Bounded backoff for transient registry faults."""

    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(max_attempts=5, base_delay_s=0.1, max_delay_s=0.3)
        assert [policy.backoff(a) for a in (1, 2, 3, 4)] == [0.1, 0.2, 0.3, 0.3]

    def test_policy_from_config(self):
        config = DeploymentConfig(retry_max_attempts=1, retry_base_delay_s=0.5, retry_max_delay_s=2.0)
        assert RetryPolicy.from_config(config) == RetryPolicy(1, 0.5, 2.0)

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        call = FlakyCall(failures=2)
        res = await call_with_retry(call, RetryPolicy(max_attempts=2, base_delay_s=0.001))
        assert res == "ok"
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        call = FlakyCall(failures=5)
        with pytest.raises(RegistryError):
            await call_with_retry(call, RetryPolicy(max_attempts=2, base_delay_s=0.001))
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        call = FlakyCall(failures=1, error=ValueError)
        with pytest.raises(ValueError):
            await call_with_retry(call, RetryPolicy(max_attempts=3, base_delay_s=0.001))
        assert call.calls == 1

    @pytest.mark.asyncio
    async def test_backoff_delays_are_applied(self):
        call = FlakyCall(failures=2)
        start_time = time.time()
        await call_with_retry(call, RetryPolicy(max_attempts=2, base_delay_s=0.1))
        duration = time.time() - start_time
        # 0.1s + 0.2s
        assert duration >= 0.25
