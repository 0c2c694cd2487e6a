"""
Shared plumbing for core services
"""

import logging
from functools import wraps

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from ..exceptions import OperationResult, PassmanError, TransientError

logger = logging.getLogger(__name__)


def service_operation(func):
    """Run a service method and return its outcome as an OperationResult.

    Core errors raised inside the method become failed results and a store
    timeout becomes a TransientError. Both roll back the service's session.
    Anything else is unexpected and propagates to the host's handler.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return OperationResult.ok(func(self, *args, **kwargs))
        except PassmanError as e:
            self.db.rollback()
            return OperationResult.fail(e)
        except (OperationalError, PoolTimeoutError) as e:
            self.db.rollback()
            logger.error(f"{func.__qualname__} failed on the data store: {type(e).__name__}")
            return OperationResult.fail(TransientError("Data store unavailable, retry the request"))

    return wrapper
