import httpx
import threading
import logging
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

class WorkerTrigger:
    """Fire-and-forget POST to the trigger endpoint.

    The request runs on a daemon thread; the calling invocation never waits
    for the next link of the chain. A timeout while waiting for the response
    means the request already reached the endpoint, so only connection-level
    failures are reported.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.url = url or settings.worker_url
        self.token = token or settings.internal_api_token
        self.timeout = timeout if timeout is not None else settings.retrigger_timeout

    def dispatch(self) -> bool:
        try:
            thread = threading.Thread(target=self._post, name="worker-trigger", daemon=True)
            thread.start()
        except RuntimeError as e:
            logger.error(f"Failed to dispatch worker trigger: {e}")
            return False
        return True

    def _post(self):
        try:
            response = httpx.post(
                self.url,
                json={},
                headers={"X-Internal-Token": self.token},
                timeout=self.timeout,
            )
            logger.debug(f"Worker trigger answered {response.status_code}")
        except httpx.ReadTimeout:
            logger.debug("Worker trigger sent, not waiting for the chain to finish")
        except httpx.HTTPError as e:
            # Periodic sweep picks up the queue
            logger.warning(f"Failed to trigger next worker at {self.url}: {e}")


class NullTrigger:
    """Used by the resident worker loop, which polls instead of chaining"""

    def dispatch(self) -> bool:
        return False


def get_worker_trigger():
    if not settings.retrigger_enabled:
        return NullTrigger()
    return WorkerTrigger()
