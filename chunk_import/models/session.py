from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from ..errors import ConfigurationError, PersistenceError

if TYPE_CHECKING:
    from .failure import Failure

"""ImportSession: policy flags for one import run.

Capabilities such as "skip on failure" / "skip on error" are plain fields
inspected once by the orchestrator; there is no behavior injected through
inheritance.
"""

__all__ = [
    "ImportSession",
    "FailureCallback",
    "ErrorCallback",
]

FailureCallback = Callable[[list["Failure"]], None]
ErrorCallback = Callable[[PersistenceError], None]


@dataclass(frozen=True)
class ImportSession:
    """Policy and override tables for an import.

    chunk_size=None disables chunking: the whole input becomes one chunk and the
    import degenerates to a single all-or-nothing transaction.
    """
    chunk_size: int | None = 1000
    skip_on_failure: bool = False
    skip_on_error: bool = False
    use_heading_row: bool = False
    fail_fast: bool = False
    custom_messages: Mapping[str, str] = field(default_factory=dict)
    custom_attributes: Mapping[str, str] = field(default_factory=dict)
    heading_row: int = 1  # 見出し行の位置 (1-based)。それ以前の行は破棄
    skip_empty_rows: bool = False
    batch_inserts: bool = False
    read_ahead: bool = False
    on_failure: FailureCallback | None = None
    on_error: ErrorCallback | None = None

    def __post_init__(self) -> None:
        if self.chunk_size is not None:
            if isinstance(self.chunk_size, bool) or not isinstance(self.chunk_size, int):
                raise ConfigurationError(f"chunk_size must be an integer, got {self.chunk_size!r}")
            if self.chunk_size <= 0:
                raise ConfigurationError(f"chunk_size must be > 0, got {self.chunk_size}")
        if self.heading_row < 1:
            raise ConfigurationError(f"heading_row must be >= 1, got {self.heading_row}")

    @property
    def chunking_enabled(self) -> bool:
        return self.chunk_size is not None

    def with_callbacks(
        self,
        on_failure: FailureCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> ImportSession:
        """Return a copy with the given callbacks registered (None keeps the current one)."""
        return replace(
            self,
            on_failure=on_failure if on_failure is not None else self.on_failure,
            on_error=on_error if on_error is not None else self.on_error,
        )
