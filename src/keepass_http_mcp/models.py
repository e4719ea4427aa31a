import enum
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------- Requests ----------

class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_payload(self) -> dict:
        """Wire form: server field names, optional fields left out when unset."""
        return self.model_dump(by_alias=True, exclude_none=True)


class AssociateRequest(_Request):
    request_type: Annotated[Literal["associate"], Field("associate", alias="RequestType")]


class TestAssociateRequest(_Request):
    request_type: Annotated[Literal["test-associate"], Field("test-associate", alias="RequestType")]
    key: Annotated[str, Field(..., alias="Key")]


class GetLoginsRequest(_Request):
    request_type: Annotated[Literal["get-logins"], Field("get-logins", alias="RequestType")]
    key: Annotated[str, Field(..., alias="Key")]
    search: Annotated[Optional[str], Field(None, alias="Search")]


ProtocolRequest = Annotated[
    Union[AssociateRequest, TestAssociateRequest, GetLoginsRequest],
    Field(discriminator="request_type"),
]


# ---------- Responses ----------

RESPONSE_ALIASES: dict[str, tuple[str, ...]] = {
    "success": ("Success", "success"),
    "error": ("Error", "error"),
    "key": ("Key", "key"),
    "entries": ("entries", "Entries"),
}


class ProtocolResponse(BaseModel):
    """
    A raw server reply.

    Servers disagree on casing, so each field accepts every spelling seen in
    the wild; the first non-null alias listed wins when several are present.
    Unknown fields are kept as extras. Entries stay untyped and are shaped
    later by the normalizer.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    success: Optional[bool] = None
    error: Optional[str] = None
    key: Optional[str] = None
    entries: Optional[list[dict[str, Any]]] = None

    @model_validator(mode="before")
    @classmethod
    def _coalesce_casings(cls, data):
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        for field, aliases in RESPONSE_ALIASES.items():
            values = [data.pop(alias) for alias in aliases if alias in data]
            data[field] = next((v for v in values if v is not None), None)
        return data

    @property
    def failed(self) -> bool:
        """Only an explicit false counts as failure; a missing flag does not."""
        return self.success is False

    @property
    def usable_key(self) -> Optional[str]:
        if isinstance(self.key, str) and self.key.strip():
            return self.key
        return None


# ---------- Canonical entry ----------

UNTITLED = "Untitled"


class CredentialEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    uuid: Optional[str] = None
    title: Annotated[str, Field(UNTITLED, min_length=1)]
    username: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    group: Optional[str] = None

    @property
    def identity(self) -> str:
        """Stable handle for the entry, falling back to title and username."""
        if self.uuid:
            return self.uuid
        return f"{self.title}-{self.username or 'unknown'}"

    def redacted(self) -> dict:
        data = self.model_dump()
        if data.get("password") is not None:
            data["password"] = "********"
        data["id"] = self.identity
        return data


# ---------- Orchestrator signals ----------

class AssociationState(str, enum.Enum):
    UNASSOCIATED = "unassociated"
    UNVERIFIED = "unverified"
    ASSOCIATED = "associated"


class NotificationStyle(str, enum.Enum):
    ANIMATED = "animated"
    SUCCESS = "success"
    FAILURE = "failure"


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    style: NotificationStyle
    title: str
    message: str
