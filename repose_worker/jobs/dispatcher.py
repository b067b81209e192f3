"""Where processor invocations, continuations included, are sent to run."""

from abc import ABC, abstractmethod
from typing import Optional

from repose_worker.jobs.models import InvocationRecord, ProcessRequest


class JobDispatcher(ABC):
    """Accepts a ProcessRequest and arranges for one invocation to run it.

    Implementations either queue it on this instance or hand it to a fresh
    instance over HTTP. ``submit`` must return without waiting for the
    invocation itself.
    """

    @abstractmethod
    async def submit(self, request: ProcessRequest) -> str:
        """Returns an invocation id."""
        ...

    @abstractmethod
    async def get_status(self, invocation_id: str) -> Optional[InvocationRecord]:
        """None when this dispatcher does not track the invocation."""
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None
