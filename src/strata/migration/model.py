"""
strata — migration model

File: src/strata/migration/model.py

Purpose
- Immutable definitions (schema and config migrations), the persisted execution record
  and the value objects returned by migration runs, rollbacks and status queries.

Functional requirements
- Migration ids order execution lexicographically; versions compare as dotted numbers.
- Forward/reverse outcomes are values (``StepResult``); failures are reported, not raised.
- Checksums are SHA-256 over id, version, description and the operation qualnames.

Non-functional requirements
- Definitions are frozen dataclasses; invalid definitions raise ``MigrationError``.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Final, TypeAlias

from strata.utils.hashing import sha256_parts

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

if TYPE_CHECKING:
    from strata.config.store import ConfigStore
    from strata.storage.document import DocumentProvider
    from strata.storage.provider import StorageProvider

_VERSION_PART_RE: Final[re.Pattern[str]] = re.compile(r"^(\d*)(.*)$")


class MigrationError(RuntimeError):
    """Raised for invalid migration definitions; run outcomes are reported as values."""


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one forward or reverse operation."""

    succeeded: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> StepResult:
        return cls(succeeded=True)

    @classmethod
    def failed(cls, error: BaseException | str) -> StepResult:
        return cls(succeeded=False, error=describe_error(error))

    def __bool__(self) -> bool:
        return self.succeeded


@dataclass(frozen=True, slots=True)
class MigrationContext:
    """Collaborators handed to every migration operation."""

    storage: StorageProvider
    config: ConfigStore
    documents: DocumentProvider


StepOutcome: TypeAlias = "StepResult | None | Awaitable[StepResult | None]"
MigrationStep: TypeAlias = Callable[[MigrationContext], StepOutcome]
ConfigStep: TypeAlias = Callable[["ConfigStore"], object]


@dataclass(frozen=True, slots=True)
class Migration:
    """A versioned schema or data change with a compensating reverse operation.

    ``forward`` and ``reverse`` receive a ``MigrationContext`` and may be plain
    functions or coroutine functions. They signal failure by raising or by returning
    ``StepResult.failed(...)``; ``None`` counts as success.
    """

    id: str
    version: str
    description: str
    forward: MigrationStep
    reverse: MigrationStep | None = None

    def __post_init__(self) -> None:
        _require_text(self.id, "migration id")
        _require_text(self.version, f"version of migration {self.id!r}")
        if not callable(self.forward):
            raise MigrationError(f"forward operation of migration {self.id!r} is not callable")
        if self.reverse is not None and not callable(self.reverse):
            raise MigrationError(f"reverse operation of migration {self.id!r} is not callable")

    @property
    def checksum(self) -> str:
        return sha256_parts(
            (
                self.id,
                self.version,
                self.description,
                qualified_name(self.forward),
                qualified_name(self.reverse),
            )
        )


@dataclass(frozen=True, slots=True)
class ConfigMigration:
    """Rewrites the config resource when its version lies in ``[from_version, to_version)``."""

    id: str
    from_version: str
    to_version: str
    description: str
    migrate: ConfigStep

    def __post_init__(self) -> None:
        _require_text(self.id, "config migration id")
        _require_text(self.from_version, f"from_version of config migration {self.id!r}")
        _require_text(self.to_version, f"to_version of config migration {self.id!r}")
        if not callable(self.migrate):
            raise MigrationError(f"config migration {self.id!r} has no callable migrate step")
        if compare_versions(self.from_version, self.to_version) >= 0:
            raise MigrationError(
                f"config migration {self.id!r} must move forward "
                f"({self.from_version} -> {self.to_version})"
            )

    def applies_to(self, config_version: str) -> bool:
        return (
            compare_versions(config_version, self.from_version) >= 0
            and compare_versions(config_version, self.to_version) < 0
        )


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """Persisted proof that a migration's forward operation completed."""

    id: str
    version: str
    description: str
    executed_at: str
    execution_time_ms: int
    checksum: str

    @classmethod
    def for_migration(cls, migration: Migration, execution_time_ms: int) -> MigrationRecord:
        return cls(
            id=migration.id,
            version=migration.version,
            description=migration.description,
            executed_at=utc_now_iso(),
            execution_time_ms=execution_time_ms,
            checksum=migration.checksum,
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> MigrationRecord:
        raw_time = payload.get("execution_time_ms", 0)
        return cls(
            id=str(payload["id"]),
            version=str(payload.get("version", "")),
            description=str(payload.get("description", "")),
            executed_at=str(payload.get("executed_at", "")),
            execution_time_ms=int(raw_time) if isinstance(raw_time, (int, float, str)) else 0,
            checksum=str(payload.get("checksum", "")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "version": self.version,
            "description": self.description,
            "executed_at": self.executed_at,
            "execution_time_ms": self.execution_time_ms,
            "checksum": self.checksum,
        }


@dataclass(frozen=True, slots=True)
class MigrationFailure:
    migration_id: str
    forward_error: str
    reverse_attempted: bool
    reverse_error: str | None = None

    @property
    def compensated(self) -> bool:
        """True when the reverse operation ran and succeeded."""
        return self.reverse_attempted and self.reverse_error is None


@dataclass(frozen=True, slots=True)
class MigrationResult:
    executed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    failures: tuple[MigrationFailure, ...] = ()
    config_executed: tuple[str, ...] = ()
    config_failed: tuple[str, ...] = ()
    backup_name: str | None = None

    @property
    def success(self) -> bool:
        return not self.failed and not self.config_failed

    @property
    def total(self) -> int:
        return len(self.executed) + len(self.failed)


@dataclass(frozen=True, slots=True)
class MigrationStatus:
    executed: tuple[str, ...]
    pending: tuple[str, ...]
    current_version: str

    @property
    def has_pending(self) -> bool:
        return bool(self.pending)

    @property
    def total(self) -> int:
        return len(self.executed) + len(self.pending)


@dataclass(frozen=True, slots=True)
class RollbackFailure:
    migration_id: str
    error: str
    reverted: tuple[str, ...] = ()
    untouched: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RollbackResult:
    """Outcome of ``rollback_to``; truthy only when every selected migration reverted."""

    target_id: str
    reverted: tuple[str, ...] = ()
    failure: RollbackFailure | None = None
    error: str | None = None
    backup_name: str | None = None
    skipped: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.failure is None and self.error is None

    def __bool__(self) -> bool:
        return self.success


def compare_versions(left: str, right: str) -> int:
    """Compare dotted versions part by part; missing parts count as zero.

    Each part compares by its leading integer first, then by any remaining suffix,
    so ``"1.10" > "1.9"`` and ``"2.0-beta" > "2.0"``.
    """

    left_parts = _split_version(left)
    right_parts = _split_version(right)
    width = max(len(left_parts), len(right_parts))
    left_parts += [(0, "")] * (width - len(left_parts))
    right_parts += [(0, "")] * (width - len(right_parts))
    for left_part, right_part in zip(left_parts, right_parts, strict=True):
        if left_part != right_part:
            return -1 if left_part < right_part else 1
    return 0


def qualified_name(operation: object) -> str:
    if operation is None:
        return ""
    module = getattr(operation, "__module__", None) or ""
    name = getattr(operation, "__qualname__", None) or type(operation).__qualname__
    return f"{module}.{name}" if module else name


def describe_error(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _split_version(version: str) -> list[tuple[int, str]]:
    parts: list[tuple[int, str]] = []
    for raw in version.strip().split("."):
        match = _VERSION_PART_RE.match(raw)
        digits, suffix = (match.group(1), match.group(2)) if match else ("", raw)
        parts.append((int(digits) if digits else 0, suffix))
    return parts


def _require_text(value: object, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise MigrationError(f"{name} must be a non-empty string")


__all__ = [
    "ConfigMigration",
    "ConfigStep",
    "Migration",
    "MigrationContext",
    "MigrationError",
    "MigrationFailure",
    "MigrationRecord",
    "MigrationResult",
    "MigrationStatus",
    "MigrationStep",
    "RollbackFailure",
    "RollbackResult",
    "StepResult",
    "compare_versions",
    "describe_error",
    "qualified_name",
    "utc_now_iso",
]
