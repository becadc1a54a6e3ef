"""
dppspace - Contract Negotiation and Usage Policy Enforcement for
Digital Product Passport Dataspaces

Policy · Negotiation · Contracts · Enforcement

Independent stakeholders (manufacturer, supplier, recycler, regulator)
agree on usage policies before any passport data moves, and every data
release is gated by evaluating the agreed policy.

Version: 0.1.0
"""

__version__ = "0.1.0"

# Layer 1: Usage Policies
from .policy import (
    Action,
    RuleKind,
    Constraint,
    ConstraintOperator,
    Condition,
    PolicyRule,
    UsagePolicy,
    AccessRequest,
    Decision,
    DecisionOutcome,
    Obligation,
    PolicyEvaluator,
    evaluate,
    OfferAssessment,
    OfferVerdict,
    assess_offer,
    PolicyCatalogue,
)

# Layer 2: Contracts
from .contracts import (
    Agreement,
    Negotiation,
    NegotiationRole,
    NegotiationState,
    Offer,
    RejectReason,
    ContractStore,
    reconcile_agreements,
)

# Layer 3: Negotiation Protocol
from .negotiation import (
    NegotiationManager,
    NegotiationStrategy,
    CatalogueStrategy,
    AcceptWhenGranted,
    ManualStrategy,
    RoleStrategy,
    encode_message,
    decode_message,
)

# Layer 4: Enforcement
from .enforcement import EnforcementGate, ReleaseResult

# Ambient: transport, audit, events, configuration
from .transport import InMemoryNetwork, InMemoryTransport, Transport, TransportConfig
from .governance import AuditLog, AuditEntry
from .events import Event, InMemoryEventBus
from .config import ConnectorConfig
from .connector import DataspaceConnector, run_until_quiet

# Exceptions
from .exceptions import (
    DataspaceError,
    NotFoundError,
    NoSuchAgreementError,
    AlreadySettledError,
    NegotiationError,
    NegotiationExhaustedError,
    NegotiationExpiredError,
    InvalidTransitionError,
    PolicyConflictError,
    PolicyError,
    StorageError,
    TransportError,
    ConfigurationError,
)

__all__ = [
    "__version__",
    # Policies
    "Action",
    "RuleKind",
    "Constraint",
    "ConstraintOperator",
    "Condition",
    "PolicyRule",
    "UsagePolicy",
    "AccessRequest",
    "Decision",
    "DecisionOutcome",
    "Obligation",
    "PolicyEvaluator",
    "evaluate",
    "OfferAssessment",
    "OfferVerdict",
    "assess_offer",
    "PolicyCatalogue",
    # Contracts
    "Agreement",
    "Negotiation",
    "NegotiationRole",
    "NegotiationState",
    "Offer",
    "RejectReason",
    "ContractStore",
    "reconcile_agreements",
    # Negotiation
    "NegotiationManager",
    "NegotiationStrategy",
    "CatalogueStrategy",
    "AcceptWhenGranted",
    "ManualStrategy",
    "RoleStrategy",
    "encode_message",
    "decode_message",
    # Enforcement
    "EnforcementGate",
    "ReleaseResult",
    # Ambient
    "InMemoryNetwork",
    "InMemoryTransport",
    "Transport",
    "TransportConfig",
    "AuditLog",
    "AuditEntry",
    "Event",
    "InMemoryEventBus",
    "ConnectorConfig",
    "DataspaceConnector",
    "run_until_quiet",
    # Exceptions
    "DataspaceError",
    "NotFoundError",
    "NoSuchAgreementError",
    "AlreadySettledError",
    "NegotiationError",
    "NegotiationExhaustedError",
    "NegotiationExpiredError",
    "InvalidTransitionError",
    "PolicyConflictError",
    "PolicyError",
    "StorageError",
    "TransportError",
    "ConfigurationError",
]
