import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from dataclasses import dataclass, field

import httpx

from .identities import IdentityTier
from .utils.parser import parse_json_body

logger = logging.getLogger(__name__)

DISCOVERY_PATH = '/rest/v1/'
BUCKET_LIST_PATH = '/storage/v1/bucket'
RPC_SEGMENT = 'rpc'


class TargetKind(Enum):
    """What sort of surface a target is."""
    TABLE = "table"
    RPC = "rpc"
    BUCKET = "bucket"


_KIND_ORDER = {TargetKind.TABLE: 0, TargetKind.RPC: 1, TargetKind.BUCKET: 2}


@dataclass(frozen=True)
class Target:
    """A probeable surface, unique by (name, kind)."""
    name: str
    kind: TargetKind

    def sort_key(self) -> Tuple[int, str]:
        return (_KIND_ORDER[self.kind], self.name)

    def __lt__(self, other: 'Target') -> bool:
        return self.sort_key() < other.sort_key()

    def to_dict(self) -> Dict[str, str]:
        return {'name': self.name, 'kind': self.kind.value}


class DiscoveryError(RuntimeError):
    """Raised when the self-description document cannot be used."""


@dataclass
class BucketListing:
    """Result of the storage bucket listing call."""
    buckets: List[Target] = field(default_factory=list)
    public: Dict[str, bool] = field(default_factory=dict)
    available: bool = False
    error: Optional[str] = None

    @property
    def public_buckets(self) -> List[str]:
        return sorted(name for name, flag in self.public.items() if flag)


class TargetCatalog:
    """Holds the sorted, read-only set of targets for a run."""

    def __init__(self,
                 tables: Iterable[Target] = (),
                 rpcs: Iterable[Target] = (),
                 buckets: Iterable[Target] = (),
                 discovery_degraded: bool = False,
                 notes: Optional[List[str]] = None):
        self._tables = tuple(self.merge(tables))
        self._rpcs = tuple(self.merge(rpcs))
        self._buckets = tuple(self.merge(buckets))
        self.discovery_degraded = discovery_degraded
        self.notes = tuple(notes or ())

    @property
    def tables(self) -> Tuple[Target, ...]:
        return self._tables

    @property
    def rpcs(self) -> Tuple[Target, ...]:
        return self._rpcs

    @property
    def buckets(self) -> Tuple[Target, ...]:
        return self._buckets

    def all_targets(self) -> List[Target]:
        return list(self._tables + self._rpcs + self._buckets)

    def with_buckets(self, buckets: Iterable[Target]) -> 'TargetCatalog':
        """Return a new catalog with bucket targets added."""
        return TargetCatalog(
            tables=self._tables,
            rpcs=self._rpcs,
            buckets=list(self._buckets) + list(buckets),
            discovery_degraded=self.discovery_degraded,
            notes=list(self.notes)
        )

    def counts(self) -> Dict[str, int]:
        return {
            'tables': len(self._tables),
            'rpcs': len(self._rpcs),
            'buckets': len(self._buckets)
        }

    @staticmethod
    def from_allowlist(lines: Iterable[str]) -> Set[Target]:
        """
        Parse allowlist lines into table targets.

        Comment suffixes (``#...``) and surrounding whitespace are stripped,
        blank lines dropped, and names deduplicated by exact string.
        """
        targets = set()
        for line in lines:
            name = line.split('#', 1)[0].strip()
            if name:
                targets.add(Target(name, TargetKind.TABLE))
        return targets

    @staticmethod
    def from_discovery(document: Any) -> Tuple[List[Target], List[Target]]:
        """
        Extract table and RPC targets from a self-description document.

        Args:
            document: Parsed OpenAPI document

        Returns:
            Tuple of (sorted table targets, sorted rpc targets)

        Raises:
            DiscoveryError: If the document has no ``paths`` mapping
        """
        if not isinstance(document, dict) or not isinstance(document.get('paths'), dict):
            raise DiscoveryError("Self-description document has no 'paths' mapping")

        tables = set()
        rpcs = set()

        for path in document['paths']:
            if not isinstance(path, str) or not path.startswith('/'):
                continue
            segments = path[1:].split('/')
            if len(segments) == 1:
                name = segments[0]
                if name and name != RPC_SEGMENT:
                    tables.add(Target(name, TargetKind.TABLE))
            elif len(segments) == 2 and segments[0] == RPC_SEGMENT and segments[1]:
                rpcs.add(Target(segments[1], TargetKind.RPC))

        return sorted(tables), sorted(rpcs)

    @staticmethod
    def merge(*groups: Iterable[Target]) -> List[Target]:
        """Union of target groups, deduplicated and sorted."""
        merged = set()
        for group in groups:
            merged.update(group)
        return sorted(merged)

    @classmethod
    async def build(cls, config, executor) -> 'TargetCatalog':
        """
        Assemble the table and RPC targets for a run.

        Raises:
            DiscoveryError: If discovery fails and there is no allowlist
        """
        allowlist = cls.from_allowlist(config.allowlist)
        has_allowlist = bool(config.tables_file or config.allowlist)
        notes = []

        if not config.features.discovery_enabled:
            logger.info(f"Discovery disabled; using {len(allowlist)} allowlisted tables")
            return cls(tables=allowlist)

        try:
            discovered_tables, discovered_rpcs = await cls.discover(executor)
        except DiscoveryError as e:
            if config.features.discover and not has_allowlist:
                logger.error(f"Discovery failed and no allowlist supplied: {e}")
                raise DiscoveryError(
                    f"Auto discovery failed and no --tables file was provided: {e}"
                )
            logger.warning(f"Discovery failed, falling back to allowlist only: {e}")
            notes.append(f"discovery unavailable: {e}")
            return cls(tables=allowlist, discovery_degraded=True, notes=notes)

        logger.info(
            f"Discovered {len(discovered_tables)} tables/views and {len(discovered_rpcs)} rpc endpoints"
        )

        if config.features.discover:
            tables = cls.merge(allowlist, discovered_tables)
        else:
            # Discovery ran only to find RPC targets
            tables = sorted(allowlist)

        return cls(tables=tables, rpcs=discovered_rpcs, notes=notes)

    @classmethod
    async def discover(cls, executor) -> Tuple[List[Target], List[Target]]:
        """
        Fetch and parse the self-description document under the shared key.

        Raises:
            DiscoveryError: On transport failure, non-2xx status, or a
                document without ``paths``
        """
        logger.info("Fetching self-description document")
        try:
            response = await executor.fetch(
                DISCOVERY_PATH,
                IdentityTier.SHARED_KEY,
                headers={'Accept': 'application/openapi+json'}
            )
        except httpx.RequestError as e:
            raise DiscoveryError(f"transport error: {e}")

        if not 200 <= response.status_code < 300:
            raise DiscoveryError(f"HTTP {response.status_code} from {DISCOVERY_PATH}")

        document = parse_json_body(response.text)
        if document is None:
            raise DiscoveryError("response body is not JSON")

        return cls.from_discovery(document)

    @staticmethod
    async def list_buckets(executor) -> BucketListing:
        """
        List storage buckets under the shared key. Best effort.

        Returns:
            BucketListing; ``available`` is False when the call failed
        """
        listing = BucketListing()
        try:
            response = await executor.fetch(BUCKET_LIST_PATH, IdentityTier.SHARED_KEY)
        except httpx.RequestError as e:
            logger.warning(f"Could not list buckets: {e}")
            listing.error = f"transport error: {e}"
            return listing

        if not 200 <= response.status_code < 300:
            logger.info(f"Could not list buckets (HTTP {response.status_code})")
            listing.error = f"HTTP {response.status_code}"
            return listing

        data = parse_json_body(response.text)
        if not isinstance(data, list):
            listing.error = "bucket listing is not a JSON array"
            return listing

        names = set()
        for entry in data:
            if not isinstance(entry, dict):
                continue
            bucket_id = entry.get('id') or entry.get('name')
            if not bucket_id:
                continue
            names.add(bucket_id)
            listing.public[bucket_id] = listing.public.get(bucket_id, False) or entry.get('public') is True

        listing.buckets = [Target(name, TargetKind.BUCKET) for name in sorted(names)]
        listing.available = True
        logger.info(f"Listed {len(listing.buckets)} buckets ({len(listing.public_buckets)} public)")
        return listing
