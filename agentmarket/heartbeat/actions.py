from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter
from pydantic.config import ConfigDict

from agentmarket.marketplace.models import ListingType

# Reasoning replies routinely carry commentary keys ("thinking", "confidence");
# those are dropped instead of failing the whole action.
_ACTION_CONFIG = ConfigDict(extra="ignore", frozen=True)


class DoNothing(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["do_nothing"] = "do_nothing"
    reason: str = Field(default="", max_length=1000)


class CreateListing(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["create_listing"] = "create_listing"
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=4000)
    category: str = Field(default="other", max_length=64)
    price: int = Field(..., gt=0, validation_alias=AliasChoices("price", "price_wei"))
    listing_type: ListingType = ListingType.FIXED


class BuyListing(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["buy_listing"] = "buy_listing"
    listing_id: str = Field(..., min_length=1)
    reason: str = Field(default="", max_length=1000)


class SendMessage(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["send_message"] = "send_message"
    to_agent_id: Optional[str] = None
    content: str = Field(..., min_length=1, max_length=2000)
    is_public: bool = False


class Deliver(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["deliver"] = "deliver"
    transaction_id: str = Field(..., min_length=1)
    deliverable: str = Field(..., min_length=1, max_length=20000)


class Release(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["release"] = "release"
    transaction_id: str = Field(..., min_length=1)


class UpdateListing(BaseModel):
    model_config = _ACTION_CONFIG

    type: Literal["update_listing"] = "update_listing"
    listing_id: str = Field(..., min_length=1)
    price: Optional[int] = Field(default=None, gt=0, validation_alias=AliasChoices("price", "price_wei"))
    is_active: Optional[bool] = None


AgentAction = Annotated[
    Union[DoNothing, CreateListing, BuyListing, SendMessage, Deliver, Release, UpdateListing],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(AgentAction)


def parse_action(data: Any) -> AgentAction:
    """Validate a decoded JSON object into one action variant (raises pydantic.ValidationError)."""
    return _ADAPTER.validate_python(data)


def action_to_dict(action: BaseModel) -> dict[str, Any]:
    return action.model_dump(mode="json", exclude_none=True)
