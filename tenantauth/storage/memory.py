from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import (
    ConstraintViolation,
    PrincipalNotFound,
    StoreUnavailable,
)
from tenantauth.storage.models import Organization, Principal


class MemoryStore:
    """In-process principal/organization store with atomic session operations.

    Every read and write happens under one ``RLock`` so ``cas_rotate`` and
    ``invalidate_all`` are single atomic steps for all request threads. When
    ``fs_root`` is given, a JSON snapshot is written after each mutation and
    reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.organizations: Dict[str, Organization] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # -- accounts -------------------------------------------------------

    def create_principal_with_organization(
        self, principal: Principal, organization: Organization
    ) -> Principal:
        """Insert a principal and its organization together or not at all."""
        with self._data_lock:
            for existing in self.principals.values():
                if existing.email == principal.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == principal.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            if organization.id in self.organizations:
                raise ConstraintViolation(
                    "organization already exists", {"field": "organization_id"}
                )
            previous_org_id = principal.organization_id
            principal.organization_id = organization.id
            self.organizations[organization.id] = organization
            self.principals[principal.id] = principal
            try:
                self._persist_state()
            except StoreUnavailable:
                self.principals.pop(principal.id, None)
                self.organizations.pop(organization.id, None)
                principal.organization_id = previous_org_id
                raise
            return principal

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            principal = self._require(principal_id)
            previous = principal.password_hash
            principal.password_hash = password_hash
            try:
                self._persist_state()
            except StoreUnavailable:
                principal.password_hash = previous
                raise

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]:
        needle = identifier.lower()
        with self._data_lock:
            return next(
                (
                    p
                    for p in self.principals.values()
                    if p.email == needle or p.username == needle
                ),
                None,
            )

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(org_id)

    # -- session control --------------------------------------------------

    def _require(self, principal_id: str) -> Principal:
        principal = self.principals.get(principal_id)
        if principal is None:
            raise PrincipalNotFound(principal_id)
        return principal

    def read_token_version(self, principal_id: str) -> int:
        with self._data_lock:
            return self._require(principal_id).token_version

    def read_current_refresh_hash(self, principal_id: str) -> Optional[str]:
        with self._data_lock:
            return self._require(principal_id).refresh_token_hash

    def cas_rotate(self, principal_id: str, expected_hash: str, new_hash: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None or principal.refresh_token_hash is None:
                return False
            if principal.refresh_token_hash != expected_hash:
                return False
            previous = principal.refresh_token_hash
            principal.refresh_token_hash = new_hash
            try:
                self._persist_state()
            except StoreUnavailable:
                # An unpersisted swap must not strand the presented token
                principal.refresh_token_hash = previous
                raise
            return True

    def invalidate_all(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return
            previous = (principal.token_version, principal.refresh_token_hash)
            principal.token_version += 1
            principal.refresh_token_hash = None
            try:
                self._persist_state()
            except StoreUnavailable:
                principal.token_version, principal.refresh_token_hash = previous
                raise

    def set_initial_session(self, principal_id: str, refresh_hash: str) -> None:
        with self._data_lock:
            principal = self._require(principal_id)
            previous = principal.refresh_token_hash
            principal.refresh_token_hash = refresh_hash
            try:
                self._persist_state()
            except StoreUnavailable:
                # Other devices keep the session they already hold
                principal.refresh_token_hash = previous
                raise

    # -- persistence ------------------------------------------------------

    @staticmethod
    def _serialize_principal(p: Principal) -> Dict[str, Any]:
        return {
            "id": p.id,
            "username": p.username,
            "email": p.email,
            "password_hash": p.password_hash,
            "role": p.role,
            "organization_id": p.organization_id,
            "is_email_verified": p.is_email_verified,
            "token_version": p.token_version,
            "refresh_token_hash": p.refresh_token_hash,
            "created_at": p.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_principal(data: Dict[str, Any]) -> Principal:
        return Principal(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            password_hash=data.get("password_hash"),
            role=data.get("role", "user"),
            organization_id=data.get("organization_id"),
            is_email_verified=bool(data.get("is_email_verified", False)),
            token_version=int(data.get("token_version", 0)),
            refresh_token_hash=data.get("refresh_token_hash"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_organization(org: Organization) -> Dict[str, Any]:
        return {
            "id": org.id,
            "name": org.name,
            "owner_id": org.owner_id,
            "member_ids": list(org.member_ids),
            "quotas": dict(org.quotas),
            "created_at": org.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_organization(data: Dict[str, Any]) -> Organization:
        return Organization(
            id=data["id"],
            name=data["name"],
            owner_id=data.get("owner_id"),
            member_ids=list(data.get("member_ids", [])),
            quotas=dict(data.get("quotas", {})),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [
                self._serialize_principal(p) for p in self.principals.values()
            ],
            "organizations": [
                self._serialize_organization(o) for o in self.organizations.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.organizations = {
            o["id"]: self._deserialize_organization(o)
            for o in data.get("organizations", [])
        }
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            organizations=len(self.organizations),
        )
        return True
