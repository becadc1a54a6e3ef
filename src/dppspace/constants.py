"""Shared defaults for negotiation, storage and enforcement."""

# Negotiation
DEFAULT_COUNTER_OFFER_BUDGET = 5
DEFAULT_NEGOTIATION_TTL_SECONDS = 300
MAX_NEGOTIATION_TTL_SECONDS = 86400

# Condition keys with time semantics
CONDITION_VALID_UNTIL = "validUntil"
CONDITION_VALID_FROM = "validFrom"
CONTEXT_NOW = "now"

# Storage key namespace
DEFAULT_STORE_NAMESPACE = "default"

# Wildcard resource reference in acceptance catalogues
CATALOGUE_FALLBACK = "*"
