"""
Provider Factory and Registry

Central registry for provider family implementations. Maps provider types to
families, validates account configuration and recommends sync strategies.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Type, Union

from inboxsync.core.config import SyncSettings, get_settings
from inboxsync.providers.base import (
    CAPABILITY_TABLE,
    CONSERVATIVE_PROVIDER_TYPE,
    ProviderCapabilities,
    ProviderFamily,
    get_capabilities,
    normalize_provider_type,
)
from inboxsync.providers.email.base import (
    BaseSyncProvider,
    ConfigurationError,
    EmailAccount,
    UnknownProviderError,
    UnsupportedProviderError,
)

logger = logging.getLogger(__name__)

# Provider registry - maps families to implementation classes
_provider_registry: dict[ProviderFamily, Type[BaseSyncProvider]] = {}


def register_provider(family: ProviderFamily):
    """
    Decorator to register a provider family implementation.

    Usage:
        @register_provider(ProviderFamily.API_POLLING)
        class GmailSyncProvider(BaseSyncProvider):
            ...
    """
    def decorator(cls: Type[BaseSyncProvider]):
        _provider_registry[family] = cls
        logger.debug(f"Registered provider family: {family.value} -> {cls.__name__}")
        return cls
    return decorator


def get_provider_class(family: ProviderFamily) -> Optional[Type[BaseSyncProvider]]:
    """Get the implementation class for a provider family."""
    return _provider_registry.get(family)


PROVIDER_FAMILIES: Mapping[str, ProviderFamily] = MappingProxyType({
    "gmail": ProviderFamily.API_POLLING,
    "imap": ProviderFamily.CONNECTION_POLLING,
    "mailgun": ProviderFamily.CONNECTION_POLLING,
    "sendgrid": ProviderFamily.CONNECTION_POLLING,
})

# Named in the capability table, no implementation yet
UNIMPLEMENTED_PROVIDER_TYPES = frozenset({"microsoft", "outlook", "smtp"})

IMAP_REQUIRED_FIELDS = ("host", "port", "user", "credentials")


@dataclass
class ValidationResult:
    """Outcome of an account configuration check."""
    success: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.success = False
        self.errors.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass
class SyncStrategy:
    """Recommended sync cadence for a provider type and message volume."""
    provider: str
    capabilities: ProviderCapabilities
    sync_interval_minutes: int
    batch_size: int
    use_incremental: bool = True
    enable_real_time: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "capabilities": self.capabilities.to_dict(),
            "recommendations": {
                "sync_interval_minutes": self.sync_interval_minutes,
                "batch_size": self.batch_size,
                "use_incremental": self.use_incremental,
                "enable_real_time": self.enable_real_time,
            },
        }


class ProviderFactory:
    """
    Creates provider instances for accounts.

    The capability table and the family dispatch table are injected; the
    defaults are the deploy-time tables. Extra collaborators (token broker,
    key provider, protocol client) are handed to the provider constructors
    that declare them.
    """

    def __init__(
        self,
        capability_table: Mapping[str, ProviderCapabilities] = CAPABILITY_TABLE,
        provider_families: Mapping[str, ProviderFamily] = PROVIDER_FAMILIES,
        settings: Optional[SyncSettings] = None,
        token_broker: Any = None,
        key_provider: Any = None,
        protocol_client: Any = None,
    ):
        self.capability_table = capability_table
        self.provider_families = provider_families
        self.settings = settings or get_settings()
        self._dependencies = {
            "token_broker": token_broker,
            "key_provider": key_provider,
            "protocol_client": protocol_client,
        }

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_capabilities(self, provider_type: Optional[str]) -> ProviderCapabilities:
        return get_capabilities(provider_type, self.capability_table)

    def get_supported_providers(self) -> list[str]:
        """Provider types with a working implementation."""
        return [
            provider_type for provider_type in self.provider_families
            if provider_type in self.capability_table and provider_type not in UNIMPLEMENTED_PROVIDER_TYPES
        ]

    def is_provider_supported(self, provider_type: Optional[str]) -> bool:
        return normalize_provider_type(provider_type) in self.get_supported_providers()

    def get_provider_family(self, provider_type: Optional[str]) -> Optional[ProviderFamily]:
        return self.provider_families.get(normalize_provider_type(provider_type))

    def get_provider_type(self, account: Union[EmailAccount, Mapping[str, Any]]) -> str:
        """Read the provider type from an account record, defaulting to SMTP."""
        provider = EmailAccount.coerce(account).provider
        if not provider:
            logger.warning(f"Account has no provider set, defaulting to '{CONSERVATIVE_PROVIDER_TYPE}'")
            return CONSERVATIVE_PROVIDER_TYPE
        return normalize_provider_type(provider)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_provider(
        self,
        provider_type: Optional[str],
        account: Union[EmailAccount, Mapping[str, Any], None] = None,
    ) -> BaseSyncProvider:
        """
        Create a provider instance for a provider type.

        Raises:
            UnsupportedProviderError: Type is named but not implemented
            UnknownProviderError: Type is not in the capability table
            ConfigurationError: The account fails validation
        """
        normalized = normalize_provider_type(provider_type)
        logger.info(f"Creating provider for type: {normalized or '<empty>'}")

        if normalized in UNIMPLEMENTED_PROVIDER_TYPES:
            raise UnsupportedProviderError(f"Provider '{provider_type}' is not yet implemented")

        family = self.provider_families.get(normalized)
        if normalized not in self.capability_table or family is None:
            raise UnknownProviderError(f"Unknown provider type: '{provider_type}'")

        cls = get_provider_class(family)
        if cls is None:
            raise UnsupportedProviderError(f"No implementation registered for family: {family.value}")

        if account is not None:
            validation = self.validate_provider_config(normalized, account)
            if not validation.success:
                raise ConfigurationError(
                    f"Invalid {normalized} account configuration: {'; '.join(validation.errors)}",
                    errors=validation.errors,
                )
            for warning in validation.warnings:
                logger.warning(f"[{normalized.upper()}] {warning}")

        dependencies = {
            name: self._dependencies[name]
            for name in getattr(cls, "dependency_names", ())
            if self._dependencies.get(name) is not None
        }
        return cls(
            provider_type=normalized,
            capabilities=self.capability_table[normalized],
            settings=self.settings,
            **dependencies,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_provider_config(
        self,
        provider_type: Optional[str],
        account: Union[EmailAccount, Mapping[str, Any]],
    ) -> ValidationResult:
        """Check that an account carries what its provider type needs. Never raises."""
        result = ValidationResult()
        normalized = normalize_provider_type(provider_type)

        if not self.is_provider_supported(normalized):
            result.add_error(f"Provider '{provider_type}' is not yet supported")
            return result

        try:
            account = EmailAccount.coerce(account)
        except ConfigurationError as e:
            result.add_error(str(e))
            return result

        family = self.provider_families[normalized]
        if family is ProviderFamily.API_POLLING:
            self._validate_oauth_account(normalized, account, result)
        elif family is ProviderFamily.CONNECTION_POLLING:
            self._validate_imap_account(normalized, account, result)

        capabilities = self.get_capabilities(normalized)
        if not capabilities.supports_read_status:
            result.warnings.append("Read status is not synchronized: provider is receive-only")

        return result

    @staticmethod
    def _validate_oauth_account(provider_type: str, account: EmailAccount, result: ValidationResult):
        if not account.has_oauth_identity():
            result.add_error(f"{provider_type.capitalize()} account missing OAuth2 tokens")
        if not account.email:
            result.add_error("Account email is required")

    @staticmethod
    def _validate_imap_account(provider_type: str, account: EmailAccount, result: ValidationResult):
        config = account.imap_config or {}
        values = {
            "host": config.get("host"),
            "port": config.get("port"),
            "user": config.get("user"),
            "credentials": account.imap_credentials_encrypted,
        }
        missing = [name for name in IMAP_REQUIRED_FIELDS if values[name] in (None, "")]

        if len(missing) == len(IMAP_REQUIRED_FIELDS):
            result.add_error(f"Missing IMAP configuration for {provider_type} account")
            return
        if missing:
            result.add_error(f"IMAP configuration incomplete: missing {', '.join(missing)}")
            return

        try:
            port = int(values["port"])
        except (TypeError, ValueError):
            port = None
        if port is None or not 1 <= port <= 65535:
            result.add_error(f"Invalid IMAP port: {values['port']!r}")

        if not account.imap_credentials_iv:
            result.add_error("IMAP credentials IV is missing")

        if config.get("use_tls", config.get("secure", True)) is False:
            result.warnings.append("IMAP connection is not encrypted (TLS disabled)")

    # ------------------------------------------------------------------
    # Strategy
    # ------------------------------------------------------------------

    def get_sync_strategy(self, provider_type: Optional[str], message_volume: int = 10) -> SyncStrategy:
        """
        Recommend a sync cadence for an estimated daily message volume.

        Busier mailboxes sync more often; batch size grows with volume up to
        the provider maximum.
        """
        capabilities = self.get_capabilities(provider_type)
        volume = max(0, int(message_volume or 0))

        if volume > 100:
            interval = 2
        elif volume >= 5:
            interval = 5
        else:
            interval = 15

        return SyncStrategy(
            provider=normalize_provider_type(provider_type),
            capabilities=capabilities,
            sync_interval_minutes=interval,
            batch_size=min(capabilities.max_batch_size, max(10, volume)),
            use_incremental=True,
            enable_real_time=capabilities.real_time_updates,
        )


# Import provider implementations to trigger registration
# These imports are at the bottom to avoid circular imports
def _load_providers():
    """Load all provider family implementations."""
    from inboxsync.providers.email import gmail_sync  # noqa: F401
    from inboxsync.providers.email import imap_sync  # noqa: F401
    logger.debug(f"Loaded provider families: {[f.value for f in _provider_registry]}")


# Auto-load providers on import
_load_providers()
