"""Fire-and-forget invocation of the worker."""

import logging
import threading
from typing import Any, Callable, Dict, Optional

import httpx

from genjobs.config import settings
from genjobs.errors import DispatchError

logger = logging.getLogger(__name__)

InvokeTarget = Callable[[str, Optional[Dict[str, Any]]], None]


class Dispatcher:
    """Hands a job invocation off without waiting for it to finish."""

    def dispatch(self, job_id: str, extra_inputs: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class ThreadDispatcher(Dispatcher):
    """Runs each invocation on its own daemon thread."""

    def __init__(self, target: Optional[InvokeTarget] = None):
        self.target = target

    def bind(self, target: InvokeTarget) -> None:
        """Set the invocation target once the worker exists."""
        self.target = target

    def dispatch(self, job_id: str, extra_inputs: Optional[Dict[str, Any]] = None) -> None:
        if self.target is None:
            raise DispatchError("Thread dispatcher has no invocation target")
        try:
            thread = threading.Thread(
                target=self.target,
                args=(job_id, extra_inputs),
                name=f"invoke-{job_id[:8]}",
                daemon=True,
            )
            thread.start()
        except RuntimeError as e:
            raise DispatchError(f"Could not start invocation thread for job {job_id}: {e}")
        logger.debug(f"Dispatched job {job_id} on thread {thread.name}")


class HttpDispatcher(Dispatcher):
    """POSTs ``/rpc/Invoke`` to a service that runs the worker."""

    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def dispatch(self, job_id: str, extra_inputs: Optional[Dict[str, Any]] = None) -> None:
        body: Dict[str, Any] = {"job_id": job_id}
        if extra_inputs:
            body["extra_inputs"] = extra_inputs
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/rpc/Invoke", json=body)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DispatchError(f"Invoke for job {job_id} failed: {e}")
        logger.debug(f"Dispatched job {job_id} over HTTP")


def build_dispatcher() -> Dispatcher:
    """Dispatcher selected by ``DISPATCH_MODE``."""
    if settings.DISPATCH_MODE == "http":
        return HttpDispatcher(settings.DISPATCH_BASE_URL, timeout=settings.DISPATCH_TIMEOUT)
    return ThreadDispatcher()
