# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Negotiation wire messages.

Every message is a JSON document tagged by ``type`` and carrying the
negotiation id. Decoding goes through a pydantic discriminated union, so
an unknown or malformed document is rejected before it reaches the
state machine.
"""

from __future__ import annotations

import uuid
from abc import abstractmethod
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from dppspace.contracts.models import Offer, Party, RejectReason, utcnow
from dppspace.exceptions import TransportError


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: f"msg-{uuid.uuid4().hex[:16]}")
    negotiation_id: str
    sender: Party
    recipient: Party
    sent_at: AwareDatetime = Field(default_factory=utcnow)

    @abstractmethod
    def dedupe_key(self) -> str:
        """Identity of the message content, used to drop redeliveries."""


class OfferMessage(_Message):
    """Carries an opening offer or a counter-offer.

    ``deadline`` is the negotiation deadline fixed by the consumer when
    the negotiation was initiated.
    """

    type: Literal["offer"] = "offer"
    offer: Offer
    deadline: AwareDatetime
    counter: bool = False

    def dedupe_key(self) -> str:
        return f"offer:{self.offer.offer_id}"


class AcceptMessage(_Message):
    """Accepts the peer's last offer.

    The acceptor has already settled its agreement; ``agreement_id`` and
    ``policy_hash`` let the receiver settle the same agreement and verify
    it holds identical policy content.
    """

    type: Literal["accept"] = "accept"
    offer_id: str
    agreement_id: str
    policy_hash: str

    def dedupe_key(self) -> str:
        return f"accept:{self.offer_id}"


class RejectMessage(_Message):
    type: Literal["reject"] = "reject"
    offer_id: Optional[str] = None
    reason: RejectReason
    detail: str = ""

    def dedupe_key(self) -> str:
        return f"reject:{self.offer_id or '-'}"


class WithdrawMessage(_Message):
    type: Literal["withdraw"] = "withdraw"
    reason: str = ""

    def dedupe_key(self) -> str:
        return "withdraw"


NegotiationMessage = Annotated[
    Union[OfferMessage, AcceptMessage, RejectMessage, WithdrawMessage],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[NegotiationMessage] = TypeAdapter(NegotiationMessage)


def encode_message(message: NegotiationMessage) -> dict[str, Any]:
    """Render a message as a JSON-compatible document."""
    return message.model_dump(mode="json")


def decode_message(payload: dict[str, Any] | str | bytes) -> NegotiationMessage:
    """Parse a wire document into a typed message.

    Raises:
        TransportError: If the document is not a valid negotiation message.
    """
    try:
        if isinstance(payload, (str, bytes)):
            return _message_adapter.validate_json(payload)
        return _message_adapter.validate_python(payload)
    except ValidationError as e:
        raise TransportError(f"Malformed negotiation message: {e}") from e


__all__ = [
    "OfferMessage",
    "AcceptMessage",
    "RejectMessage",
    "WithdrawMessage",
    "NegotiationMessage",
    "encode_message",
    "decode_message",
]
