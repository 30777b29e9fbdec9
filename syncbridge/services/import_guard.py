"""Re-entrancy guard for local writes made by pulls.

A pull that saves a local record fires the same platform events as a user
edit. While the guard is active those events must not enqueue a push back to
Odoo. The flag lives in a ContextVar, so it is scoped to the current call
stack and asyncio task instead of the whole process.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_importing: ContextVar[bool] = ContextVar("syncbridge_importing", default=False)


def is_importing() -> bool:
    return _importing.get()


@contextmanager
def importing() -> Iterator[None]:
    token = _importing.set(True)
    try:
        yield
    finally:
        _importing.reset(token)
