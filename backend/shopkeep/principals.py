from dataclasses import dataclass
from typing import Dict, Optional

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId

CUSTOMER = "customer"
ADMIN = "admin"
PRINCIPAL_KINDS = (CUSTOMER, ADMIN)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request, tagged with its account kind."""

    kind: str
    id: ObjectId
    email: str
    name: str

    @property
    def is_customer(self) -> bool:
        return self.kind == CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.kind == ADMIN


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def normalize_object_id_value(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def account_collection(store, kind: str):
    if kind == CUSTOMER:
        return store.customers
    if kind == ADMIN:
        return store.admins
    raise ValueError(f"Unknown principal kind: {kind!r}")


def display_name(document) -> str:
    first = str(document.get("first_name") or "").strip()
    last = str(document.get("last_name") or "").strip()
    return " ".join(part for part in (first, last) if part)


def principal_from_document(kind: str, document) -> Principal:
    return Principal(
        kind=kind,
        id=document["_id"],
        email=normalize_email(document.get("email")),
        name=display_name(document),
    )


def load_principal(store, kind: Optional[str], identity) -> Optional[Principal]:
    if kind not in PRINCIPAL_KINDS:
        return None
    object_id = normalize_object_id_value(identity)
    if not object_id:
        return None
    document = account_collection(store, kind).find_one({"_id": object_id})
    if not document:
        return None
    return principal_from_document(kind, document)


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def authenticate(store, kind: str, email: str, password: str) -> Optional[Principal]:
    document = account_collection(store, kind).find_one({"email": normalize_email(email)})
    if not document or not document.get("password"):
        return None
    stored_hash = document["password"]
    if isinstance(stored_hash, str):
        stored_hash = stored_hash.encode("utf-8")
    if not bcrypt.checkpw(password.encode("utf-8"), stored_hash):
        return None
    return principal_from_document(kind, document)


def serialize_profile(principal: Principal, document) -> Dict[str, object]:
    profile: Dict[str, object] = {
        "id": str(principal.id),
        "kind": principal.kind,
        "email": principal.email,
        "firstName": document.get("first_name", "") or "",
        "lastName": document.get("last_name", "") or "",
    }
    if principal.is_customer:
        profile["mobileNumber"] = document.get("mobile_number", "") or ""
        profile["orderCount"] = len(document.get("orders") or [])
    return profile
