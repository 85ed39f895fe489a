"""Context variables propagated into DAL spans."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def current_run_id() -> Optional[str]:
    """Return the run id bound to the current context, if any."""
    return run_id_var.get()


@contextmanager
def run_scope(run_id: str) -> Iterator[None]:
    """Bind ``run_id`` for the duration of the block."""
    token = run_id_var.set(run_id)
    try:
        yield
    finally:
        run_id_var.reset(token)
