from typing import Callable, Optional

import httpx
import pytest

from stepflow.config import StepflowConfig
from stepflow.runtime import ClientRegistry


async def instant_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def make_clients():
    """Factory for isolated registries with a mocked HTTP transport.

    Retry and backoff sleeps return immediately unless ``sleep`` is given.
    """

    def factory(
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        sleep=instant_sleep,
        config: Optional[StepflowConfig] = None,
        **kwargs,
    ) -> ClientRegistry:
        transport = httpx.MockTransport(handler) if handler is not None else None
        return ClientRegistry(config=config, http_transport=transport, sleep=sleep, **kwargs)

    return factory
