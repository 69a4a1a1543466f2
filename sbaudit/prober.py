import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from urllib.parse import quote, urlparse

import httpx

from .catalog import Target, TargetKind
from .config import AuditConfig
from .identities import IdentityContext, IdentitySet, IdentityTier
from .utils.http import HttpSession
from .utils.parser import parse_row_filter
from .utils.ratelimit import RateLimiter

logger = logging.getLogger(__name__)


class ProbeKind(Enum):
    """Closed set of probes the executor knows how to send."""
    READ = "read"
    SAMPLE_READ = "sample_read"
    LIST_OBJECTS = "list_objects"
    MUTATE_PATCH = "mutate_patch"
    MUTATE_DELETE = "mutate_delete"
    MUTATE_CREATE = "mutate_create"
    RPC_INVOKE = "rpc_invoke"


LEGAL_TARGETS = {
    ProbeKind.READ: TargetKind.TABLE,
    ProbeKind.SAMPLE_READ: TargetKind.TABLE,
    ProbeKind.MUTATE_PATCH: TargetKind.TABLE,
    ProbeKind.MUTATE_DELETE: TargetKind.TABLE,
    ProbeKind.MUTATE_CREATE: TargetKind.TABLE,
    ProbeKind.LIST_OBJECTS: TargetKind.BUCKET,
    ProbeKind.RPC_INVOKE: TargetKind.RPC,
}


class OutcomeType(Enum):
    """Shape of a probe result."""
    HTTP_STATUS = "http_status"
    TRANSPORT_ERROR = "transport_error"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class ProbeOutcome:
    """Normalized result of one probe. Consumed immediately, never stored."""
    target: Target
    tier: IdentityTier
    kind: ProbeKind
    result: OutcomeType
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return (self.result == OutcomeType.HTTP_STATUS
                and self.status_code is not None
                and 200 <= self.status_code < 300)

    @property
    def label(self) -> str:
        """Short form for the status matrix: the code, ``N/A`` or ``ERR``."""
        if self.result == OutcomeType.HTTP_STATUS:
            return str(self.status_code)
        if self.result == OutcomeType.NOT_APPLICABLE:
            return "N/A"
        return "ERR"


@dataclass(frozen=True)
class ProbeRequest:
    """Wire shape of a probe."""
    method: str
    path: str
    headers: Dict[str, str]
    params: Optional[Union[Dict[str, str], List[Tuple[str, str]]]] = None
    json: Any = None


class ProbeExecutor:
    """Issues exactly one bounded request per (target, identity, kind)."""

    def __init__(self,
                 config: AuditConfig,
                 identities: IdentitySet,
                 session: HttpSession,
                 rate_limiter: Optional[RateLimiter] = None):
        """
        Initialize the probe executor.

        Args:
            config: Immutable audit configuration
            identities: The run's identity set
            session: Shared HTTP session
            rate_limiter: Pacing between requests; disabled if omitted
        """
        self.config = config
        self.identities = identities
        self.session = session
        self.rate_limiter = rate_limiter or RateLimiter(0)
        self.host = urlparse(config.url).netloc

    def build_request(self, target: Target, kind: ProbeKind) -> Optional[ProbeRequest]:
        """
        Construct the wire request for a probe.

        Mutations are scoped by the configured filter expression, which must
        match no real rows. That property is the caller's responsibility.

        Returns:
            ProbeRequest, or None if the probe cannot be built
        """
        name = quote(target.name, safe='')

        if kind == ProbeKind.READ:
            return ProbeRequest(
                'GET', f"/rest/v1/{name}",
                headers={'Range': '0-0', 'Prefer': 'count=exact'},
                params={'select': '*', 'limit': '1'}
            )
        if kind == ProbeKind.SAMPLE_READ:
            rows = self.config.probe.sample_rows
            return ProbeRequest(
                'GET', f"/rest/v1/{name}",
                headers={'Range': f"0-{rows - 1}"},
                params={'select': '*', 'limit': str(rows)}
            )
        if kind == ProbeKind.LIST_OBJECTS:
            return ProbeRequest(
                'POST', f"/storage/v1/object/list/{name}",
                headers={'Content-Type': 'application/json'},
                json={'prefix': '', 'limit': 1, 'offset': 0}
            )
        if kind in (ProbeKind.MUTATE_PATCH, ProbeKind.MUTATE_DELETE):
            params = self._filter_params()
            if not params:
                return None
            return ProbeRequest(
                'PATCH' if kind == ProbeKind.MUTATE_PATCH else 'DELETE',
                f"/rest/v1/{name}",
                headers={'Content-Type': 'application/json', 'Prefer': 'return=minimal'},
                params=params,
                json={} if kind == ProbeKind.MUTATE_PATCH else None
            )
        if kind == ProbeKind.MUTATE_CREATE:
            # An empty bulk insert is accepted or refused without writing rows
            return ProbeRequest(
                'POST', f"/rest/v1/{name}",
                headers={'Content-Type': 'application/json', 'Prefer': 'return=minimal'},
                json=[]
            )
        if kind == ProbeKind.RPC_INVOKE:
            return ProbeRequest(
                'POST', f"/rest/v1/rpc/{name}",
                headers={'Content-Type': 'application/json'},
                json={}
            )
        return None

    def _filter_params(self) -> Optional[List[Tuple[str, str]]]:
        """Query parameters for the configured mutation filter, or None if unusable."""
        return parse_row_filter(self.config.probe.mutation_filter)

    async def execute(self, target: Target, tier: IdentityTier, kind: ProbeKind) -> ProbeOutcome:
        """
        Run a single probe.

        Args:
            target: Target to probe
            tier: Identity tier to probe under
            kind: Probe kind

        Returns:
            ProbeOutcome; NOT_APPLICABLE outcomes issue no network call
        """
        identity = self.identities.resolve(tier)

        if LEGAL_TARGETS[kind] != target.kind:
            return self._not_applicable(target, tier, kind, f"{kind.value} does not apply to {target.kind.value}")
        if not identity.available:
            return self._not_applicable(target, tier, kind, f"no credential for tier {tier.value}")

        request = self.build_request(target, kind)
        if request is None:
            return self._not_applicable(target, tier, kind, "probe could not be constructed")

        logger.debug(f"Probe {kind.value} {target.name} as {tier.value}")

        try:
            response = await self._send(request, identity)
        except httpx.RequestError as e:
            logger.warning(f"Transport error probing {target.name} ({kind.value}, {tier.value}): {e}")
            return ProbeOutcome(
                target=target, tier=tier, kind=kind,
                result=OutcomeType.TRANSPORT_ERROR,
                error=str(e) or e.__class__.__name__
            )

        return ProbeOutcome(
            target=target, tier=tier, kind=kind,
            result=OutcomeType.HTTP_STATUS,
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=self._safe_text(response)
        )

    async def fetch(self,
                    path: str,
                    tier: IdentityTier,
                    method: str = 'GET',
                    headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """
        Issue a non-probe metadata request (discovery, bucket listing, settings).

        Raises:
            ValueError: If the identity is unavailable
            httpx.RequestError: On transport failure
        """
        identity = self.identities.resolve(tier)
        request = ProbeRequest(method, path, headers=headers or {})
        return await self._send(request, identity)

    async def _send(self, request: ProbeRequest, identity: IdentityContext) -> httpx.Response:
        merged_headers = {**identity.headers(), **request.headers}
        await self.rate_limiter.wait_turn(self.host)
        return await self.session.request(
            method=request.method,
            url=f"{self.config.url}{request.path}",
            headers=merged_headers,
            json=request.json,
            params=request.params
        )

    @staticmethod
    def _safe_text(response: httpx.Response) -> Optional[str]:
        try:
            return response.text
        except (UnicodeDecodeError, LookupError) as e:
            logger.debug(f"Could not decode response body: {e}")
            return None

    @staticmethod
    def _not_applicable(target: Target, tier: IdentityTier, kind: ProbeKind, reason: str) -> ProbeOutcome:
        logger.debug(f"Probe {kind.value} {target.name} as {tier.value} not applicable: {reason}")
        return ProbeOutcome(
            target=target, tier=tier, kind=kind,
            result=OutcomeType.NOT_APPLICABLE,
            error=reason
        )
