import asyncio
from dataclasses import dataclass
from .errors import RegistryError
from .logger import get_logger

logger = get_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3  # Retries after the initial attempt
    base_delay_s: float = 0.1
    max_delay_s: float = 5.0

    @classmethod
    def from_config(cls, config):
        return cls(config.retry_max_attempts, config.retry_base_delay_s, config.retry_max_delay_s)

    def backoff(self, attempt):
        return min((2 ** (attempt - 1)) * self.base_delay_s, self.max_delay_s)


async def call_with_retry(func, policy, description="registry call"):
    """Await func(), retrying transient RegistryError with exponential backoff"""
    total_attempts = max(1, policy.max_attempts + 1)

    for attempt in range(1, total_attempts + 1):
        try:
            return await func()
        except RegistryError as e:
            if attempt >= total_attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            backoff_time = policy.backoff(attempt)
            logger.warning(f"{description} attempt {attempt} failed: {e}; retrying in {backoff_time}s")
            await asyncio.sleep(backoff_time)
