"""
Provider Capability Table

Static per-provider-type declaration of which sync operations are legal and at
what scale. The table is defined at deploy time and is read-only at runtime;
lookups are case-insensitive and unknown types resolve to the most
conservative (receive-only) entry.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class IncrementalSyncStrategy(str, Enum):
    """How a provider bounds a sync to changes since the last cursor."""
    HISTORY = "history"  # Backend change-history id
    DELTA = "delta"  # Backend delta token
    TIMESTAMP = "timestamp"  # Client-side timestamp comparison


class ProviderFamily(str, Enum):
    """Concrete synchronization strategy families."""
    API_POLLING = "api_polling"
    CONNECTION_POLLING = "connection_polling"


@dataclass(frozen=True)
class ProviderCapabilities:
    """Declared capabilities of a provider type."""
    bidirectional_sync: bool
    real_time_updates: bool
    incremental_sync_strategy: IncrementalSyncStrategy
    max_batch_size: int
    supports_read_status: bool
    supports_labels: bool
    rate_limit_per_minute: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["incremental_sync_strategy"] = self.incremental_sync_strategy.value
        return data


_RELAY_IMAP = ProviderCapabilities(
    bidirectional_sync=False,  # Receive-only
    real_time_updates=False,
    incremental_sync_strategy=IncrementalSyncStrategy.TIMESTAMP,
    max_batch_size=50,
    supports_read_status=False,
    supports_labels=False,
    rate_limit_per_minute=60,
)

CONSERVATIVE_CAPABILITIES = ProviderCapabilities(
    bidirectional_sync=False,
    real_time_updates=False,
    incremental_sync_strategy=IncrementalSyncStrategy.TIMESTAMP,
    max_batch_size=20,
    supports_read_status=False,
    supports_labels=False,
    rate_limit_per_minute=60,
)

CAPABILITY_TABLE: Mapping[str, ProviderCapabilities] = MappingProxyType({
    "gmail": ProviderCapabilities(
        bidirectional_sync=True,
        real_time_updates=True,
        incremental_sync_strategy=IncrementalSyncStrategy.HISTORY,
        max_batch_size=50,
        supports_read_status=True,
        supports_labels=True,
        rate_limit_per_minute=250,  # Gmail API quota
    ),
    "microsoft": ProviderCapabilities(
        bidirectional_sync=True,
        real_time_updates=True,
        incremental_sync_strategy=IncrementalSyncStrategy.DELTA,
        max_batch_size=100,
        supports_read_status=True,
        supports_labels=False,  # Outlook uses categories, not labels
        rate_limit_per_minute=300,  # Graph API quota
    ),
    "outlook": ProviderCapabilities(
        bidirectional_sync=True,
        real_time_updates=True,
        incremental_sync_strategy=IncrementalSyncStrategy.DELTA,
        max_batch_size=100,
        supports_read_status=True,
        supports_labels=False,
        rate_limit_per_minute=300,
    ),
    "smtp": CONSERVATIVE_CAPABILITIES,
    "mailgun": _RELAY_IMAP,
    "sendgrid": _RELAY_IMAP,
    "imap": _RELAY_IMAP,
})

CONSERVATIVE_PROVIDER_TYPE = "smtp"


def normalize_provider_type(provider_type: Optional[str]) -> str:
    """Lower-case and trim a provider type string."""
    return (provider_type or "").strip().lower()


def get_capabilities(
    provider_type: Optional[str],
    table: Mapping[str, ProviderCapabilities] = CAPABILITY_TABLE,
) -> ProviderCapabilities:
    """
    Look up capabilities for a provider type.

    Never fails: unknown or empty types get the conservative entry.
    """
    capabilities = table.get(normalize_provider_type(provider_type))
    if capabilities is None:
        # Injected tables may omit the conservative entry
        return table.get(CONSERVATIVE_PROVIDER_TYPE, CONSERVATIVE_CAPABILITIES)
    return capabilities


def fetch_concurrency(capabilities: ProviderCapabilities, ceiling: int) -> int:
    """Per-account worker count: one per 60 requests/minute, at least one."""
    workers = capabilities.rate_limit_per_minute // 60
    return max(1, min(ceiling, workers))
