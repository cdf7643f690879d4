"""
Check contract and the catalog that resolves check ids to executable checks.
"""
import enum
import importlib
import logging
import pkgutil
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

if TYPE_CHECKING:
    from cloudaudit.services.check_runner import CheckContext

logger = logging.getLogger(__name__)

SWEEP_ID = "all"


@runtime_checkable
class Check(Protocol):
    """
    An executable check.

    ``run`` reports findings and resource counts through ``context.accumulator``
    and makes every provider call through ``context.call`` so retries apply.
    """
    check_id: str
    service: str

    def run(self, context: "CheckContext") -> None:
        ...


class EntryKind(str, enum.Enum):
    CHECK = "CHECK"
    SWEEP = "SWEEP"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class CatalogEntry:
    """Result of resolving a check-set id."""
    kind: EntryKind
    requested: str
    checks: Tuple[Check, ...] = field(default_factory=tuple)
    error: Optional[str] = None


class CheckCatalog:
    """Registry of available checks keyed by check id."""

    def __init__(self) -> None:
        self._checks: Dict[str, Check] = {}

    @staticmethod
    def _normalize(check_id: str) -> str:
        if not check_id or not check_id.strip():
            raise ValueError("Check id must be a non-empty string")
        return check_id.strip().lower()

    def add(self, check: Check) -> Check:
        key = self._normalize(check.check_id)
        if key == SWEEP_ID:
            raise ValueError(f"'{SWEEP_ID}' is reserved for the full sweep")
        if key in self._checks and self._checks[key] is not check:
            raise ValueError(f"Check '{check.check_id}' is already registered")
        self._checks[key] = check
        return check

    def register(self, cls_or_factory: Callable[[], Check]) -> Callable[[], Check]:
        """Class decorator: instantiate and register the check."""
        self.add(cls_or_factory())
        return cls_or_factory

    def resolve(self, check_set: str) -> CatalogEntry:
        """
        Resolve a check-set id to the checks it runs.

        Never raises for unknown ids; an UNKNOWN entry carries a descriptive error.
        """
        requested = check_set or ""
        try:
            key = self._normalize(requested)
        except ValueError as e:
            return CatalogEntry(kind=EntryKind.UNKNOWN, requested=requested, error=str(e))

        if key == SWEEP_ID:
            checks = tuple(self._checks[k] for k in sorted(self._checks))
            if not checks:
                return CatalogEntry(kind=EntryKind.UNKNOWN, requested=requested,
                                    error="No checks are registered for a full sweep")
            return CatalogEntry(kind=EntryKind.SWEEP, requested=requested, checks=checks)

        check = self._checks.get(key)
        if check is None:
            known = ", ".join(sorted(self._checks)) or "none"
            return CatalogEntry(
                kind=EntryKind.UNKNOWN,
                requested=requested,
                error=f"Unknown check '{requested}'. Known checks: {known}",
            )
        return CatalogEntry(kind=EntryKind.CHECK, requested=requested, checks=(check,))

    def __contains__(self, check_id: object) -> bool:
        if not isinstance(check_id, str) or not check_id.strip():
            return False
        return self._normalize(check_id) in self._checks

    def __len__(self) -> int:
        return len(self._checks)

    def keys(self) -> Iterator[str]:
        return iter(self._checks)

    def as_mapping(self) -> Mapping[str, Check]:
        return MappingProxyType(self._checks)

    def list_checks(self) -> List[Dict[str, str]]:
        return [
            {"check_id": c.check_id, "service": c.service}
            for _, c in sorted(self._checks.items())
        ]


CHECK_CATALOG = CheckCatalog()
register_check = CHECK_CATALOG.register


def load_builtin_checks() -> CheckCatalog:
    """Import every module under cloudaudit.checks so their decorators run."""
    package = importlib.import_module("cloudaudit.checks")
    for module_info in pkgutil.iter_modules(package.__path__):
        if module_info.name.startswith("_"):
            continue
        importlib.import_module(f"{package.__name__}.{module_info.name}")
    return CHECK_CATALOG
