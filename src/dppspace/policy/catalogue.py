"""
Acceptance Catalogue

A provider's declaration of what it is willing to grant, per resource.
Resource references are matched exactly first, then as glob patterns in
declaration order, then against the ``*`` fallback.

Example catalogue file::

    provider: urn:dpp:party:cellmaker
    policies:
      "urn:dpp:passport:battery-*":
        rules:
          - kind: permission
            action: READ
            target: materials
          - kind: obligation
            action: READ
            target: materials
            duty: log
"""

from pathlib import Path
from typing import Any, Mapping, Optional
import fnmatch
import logging

import yaml

from dppspace.constants import CATALOGUE_FALLBACK
from dppspace.exceptions import PolicyError

from .model import UsagePolicy

logger = logging.getLogger(__name__)


class PolicyCatalogue:
    """Resource reference -> acceptance policy lookup."""

    def __init__(self, policies: Optional[Mapping[str, UsagePolicy]] = None) -> None:
        self._policies: dict[str, UsagePolicy] = dict(policies or {})

    def register(self, resource_ref: str, policy: UsagePolicy) -> None:
        """Register or replace the acceptance policy for a resource pattern."""
        self._policies[resource_ref] = policy
        logger.info("Registered acceptance policy %s for %s", policy.policy_id, resource_ref)

    def remove(self, resource_ref: str) -> bool:
        return self._policies.pop(resource_ref, None) is not None

    def patterns(self) -> list[str]:
        return list(self._policies.keys())

    def lookup(self, resource_ref: str) -> Optional[UsagePolicy]:
        """Return the acceptance policy for ``resource_ref``, or None."""
        if resource_ref in self._policies:
            return self._policies[resource_ref]
        for pattern, policy in self._policies.items():
            if pattern == CATALOGUE_FALLBACK:
                continue
            if fnmatch.fnmatchcase(resource_ref, pattern):
                return policy
        return self._policies.get(CATALOGUE_FALLBACK)

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, resource_ref: str) -> bool:
        return self.lookup(resource_ref) is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PolicyCatalogue":
        entries = data.get("policies")
        if not isinstance(entries, Mapping):
            raise PolicyError("Catalogue must contain a 'policies' mapping")
        catalogue = cls()
        for resource_ref, policy_data in entries.items():
            if not isinstance(policy_data, Mapping):
                raise PolicyError(f"Policy for '{resource_ref}' must be a mapping")
            catalogue._policies[str(resource_ref)] = UsagePolicy.from_dict(policy_data)
        return catalogue

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "PolicyCatalogue":
        data = yaml.safe_load(yaml_content)
        if not isinstance(data, Mapping):
            raise PolicyError("Catalogue document must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | Path) -> "PolicyCatalogue":
        path = Path(path)
        with open(path, "r") as f:
            catalogue = cls.from_yaml(f.read())
        logger.debug("Loaded %d acceptance policies from %s", len(catalogue), path)
        return catalogue

    def to_yaml(self) -> str:
        data = {
            "policies": {
                ref: policy.model_dump(mode="json", exclude_none=True)
                for ref, policy in self._policies.items()
            }
        }
        return yaml.dump(data, default_flow_style=False, sort_keys=False)
