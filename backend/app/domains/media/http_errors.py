"""Translation of media domain errors into HTTP responses."""
import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status

from app.core.errors import UpstreamError, UpstreamTimeout
from app.domains.media.errors import MediaValidationError, RecordNotFound, StorageKeyConflict

logger = logging.getLogger(__name__)


@contextmanager
def http_errors(action: str) -> Iterator[None]:
    """Raise the HTTPException matching a domain error raised while doing `action`."""
    try:
        yield
    except MediaValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RecordNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StorageKeyConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except UpstreamTimeout as e:
        logger.error(f"Timed out while trying to {action}: {e}")
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"Failed to {action}: upstream timed out",
        )
    except UpstreamError as e:
        logger.error(f"Upstream failure while trying to {action}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to {action}: {str(e)}",
        )
