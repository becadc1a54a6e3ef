"""
Connector Configuration

One YAML document configures a connector::

    party: urn:dpp:party:recycler
    counter_offer_budget: 5
    negotiation_ttl_seconds: 300
    catalogue: catalogue.yaml
    storage:
      backend: redis
      redis_host: localhost
    transport:
      backend: websocket
      host: relay.local
      port: 8765
"""

from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from dppspace.constants import (
    DEFAULT_COUNTER_OFFER_BUDGET,
    DEFAULT_NEGOTIATION_TTL_SECONDS,
    MAX_NEGOTIATION_TTL_SECONDS,
)
from dppspace.contracts.models import Party
from dppspace.exceptions import ConfigurationError
from dppspace.storage.provider import StorageConfig
from dppspace.transport.base import TransportConfig


class TransportSettings(BaseModel):
    """Transport section of the connector configuration."""

    backend: Literal["memory", "websocket"] = "memory"
    host: str = "localhost"
    port: int = Field(default=8765, ge=1, le=65535)
    use_tls: bool = False
    timeout_seconds: int = Field(default=30, ge=1)
    max_retries: int = Field(default=5, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    heartbeat_interval: float = Field(default=30.0, ge=0)

    def to_transport_config(self, party: str) -> TransportConfig:
        return TransportConfig(
            party=party,
            host=self.host,
            port=self.port,
            use_tls=self.use_tls,
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            retry_delay_seconds=self.retry_delay_seconds,
        )


class ConnectorConfig(BaseModel):
    """Configuration of one dataspace connector."""

    party: Party
    counter_offer_budget: int = Field(default=DEFAULT_COUNTER_OFFER_BUDGET, ge=0)
    negotiation_ttl_seconds: int = Field(
        default=DEFAULT_NEGOTIATION_TTL_SECONDS,
        gt=0,
        le=MAX_NEGOTIATION_TTL_SECONDS,
    )
    namespace: Optional[str] = Field(default=None, description="Store key prefix; defaults to the party")
    catalogue: Optional[str] = Field(default=None, description="Path of the acceptance catalogue YAML")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transport: TransportSettings = Field(default_factory=TransportSettings)

    @property
    def store_namespace(self) -> str:
        return self.namespace or self.party

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConnectorConfig":
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid connector configuration: {e}") from e

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "ConnectorConfig":
        data = yaml.safe_load(yaml_content)
        if not isinstance(data, Mapping):
            raise ConfigurationError("Connector configuration must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | Path) -> "ConnectorConfig":
        """Load a configuration file; a relative catalogue path is resolved against it."""
        path = Path(path)
        with open(path, "r") as f:
            config = cls.from_yaml(f.read())
        if config.catalogue and not Path(config.catalogue).is_absolute():
            config = config.model_copy(update={"catalogue": str(path.parent / config.catalogue)})
        return config
