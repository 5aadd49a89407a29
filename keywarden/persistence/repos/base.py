from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError

from keywarden.core.errors import StoreError


logger = logging.getLogger(__name__)


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    # Callers see StoreError only; uncommitted work is rolled back when the session closes.
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("store_operation_failed operation=%s", operation, exc_info=exc)
        raise StoreError(f"{operation} failed") from exc
