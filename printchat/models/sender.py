"""
Message senders.

A sender is one of three variants. Code that needs to branch on the author of a
message takes a ``Sender`` and dispatches on its class instead of comparing strings.
"""
from typing import Literal, Optional, Tuple, Union
from pydantic import BaseModel

from .chat import Audience, SenderType


class CustomerSender(BaseModel):
    kind: Literal["customer"] = "customer"
    id: str


class AgentSender(BaseModel):
    kind: Literal["agent"] = "agent"
    id: str


class SystemSender(BaseModel):
    """Automated or moderator content, not tied to an account"""
    kind: Literal["system"] = "system"


Sender = Union[CustomerSender, AgentSender, SystemSender]


def sender_for_audience(audience: Audience, user_id: str) -> Sender:
    if audience == Audience.CUSTOMER:
        return CustomerSender(id=user_id)
    return AgentSender(id=user_id)


def sender_type(sender: Sender) -> SenderType:
    if isinstance(sender, CustomerSender):
        return SenderType.CUSTOMER
    if isinstance(sender, AgentSender):
        return SenderType.AGENT
    if isinstance(sender, SystemSender):
        return SenderType.SYSTEM
    raise TypeError(f"Unknown sender variant: {sender!r}")


def sender_id(sender: Sender) -> Optional[str]:
    if isinstance(sender, (CustomerSender, AgentSender)):
        return sender.id
    return None


def initial_read_flags(sender: Sender) -> Tuple[bool, bool]:
    """
    (read_by_customer, read_by_agent) for a freshly created message.

    The author's own audience has already seen it; system content is read by both.
    """
    if isinstance(sender, CustomerSender):
        return True, False
    if isinstance(sender, AgentSender):
        return False, True
    if isinstance(sender, SystemSender):
        return True, True
    raise TypeError(f"Unknown sender variant: {sender!r}")
