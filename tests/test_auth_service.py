import pytest

from tenantauth.service.auth import SYSTEM_ORG_ID, AuthContext
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SessionInvalidatedError,
    StoreUnavailableError,
    ValidationError,
)
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.errors import StoreUnavailable
from tenantauth.storage.models import QUOTA_TYPES, UNLIMITED

PASSWORD = "Sup3rSecret"


async def _register(auth, username="erin", email="erin@example.com", org=None):
    return await auth.register(username, email, PASSWORD, organization_name=org)


async def test_register_creates_admin_and_owned_organization():
    auth = get_runtime().auth

    principal, org = await _register(auth, "Erin", "Erin@Example.com", "Erin's Lab")

    assert principal.username == "erin"
    assert principal.email == "erin@example.com"
    assert principal.role == "admin"
    assert principal.password_hash.startswith("$argon2id$")
    assert org.name == "Erin's Lab"
    assert org.owner_id == principal.id
    assert org.member_ids == [principal.id]
    assert auth.store.get_principal(principal.id).organization_id == org.id


async def test_short_org_name_falls_back_to_username():
    auth = get_runtime().auth
    _, org = await _register(auth, org=" x ")
    assert org.name == "erin"


async def test_system_organization_is_unlimited():
    auth = get_runtime().auth

    _, org = await _register(auth, org="System")

    assert org.id == SYSTEM_ORG_ID
    assert org.quotas == {quota_type: UNLIMITED for quota_type in QUOTA_TYPES}


async def test_register_conflict_does_not_reveal_field():
    auth = get_runtime().auth
    await _register(auth)

    with pytest.raises(ConflictError) as exc_info:
        await _register(auth, username="someone-else")

    assert exc_info.value.message == "Credentials already in use"


@pytest.mark.parametrize(
    "username,email,password",
    [
        ("erin", "erin@example.com", "short1A"),
        ("erin", "erin@example.com", "alllowercase1"),
        ("erin", "not-an-email", PASSWORD),
        ("e!", "erin@example.com", PASSWORD),
        ("", "erin@example.com", PASSWORD),
    ],
)
async def test_register_validation(username, email, password):
    auth = get_runtime().auth
    with pytest.raises(ValidationError):
        await auth.register(username, email, password)


async def test_register_disabled(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.settings, "allow_signup", False)
    with pytest.raises(ForbiddenError):
        await _register(runtime.auth)


@pytest.mark.parametrize("identifier", ["erin", "ERIN@example.com"])
async def test_login_by_username_or_email(identifier):
    auth = get_runtime().auth
    principal, org = await _register(auth, org="Acme")

    logged_in, tokens = await auth.login(identifier, PASSWORD)

    assert logged_in.id == principal.id
    ctx = await auth.authenticate(f"Bearer {tokens.access_token}")
    assert isinstance(ctx, AuthContext)
    assert ctx.principal_id == principal.id
    assert ctx.is_admin
    assert ctx.organization_id == org.id
    assert ctx.organization_name == "Acme"
    assert ctx.email == "erin@example.com"


@pytest.mark.parametrize(
    "identifier,password",
    [("erin", "Wr0ngPassword"), ("nobody", PASSWORD)],
)
async def test_login_failures_are_indistinguishable(identifier, password):
    auth = get_runtime().auth
    await _register(auth)

    with pytest.raises(AuthenticationError) as exc_info:
        await auth.login(identifier, password)

    assert exc_info.value.message == "Invalid credentials"
    assert exc_info.value.error_code == "unauthorized"


@pytest.mark.parametrize("identifier", ["\uff45\uff52\uff49\uff4e", "er\u200bin", " Erin "])
async def test_login_folds_identifier_like_registration(identifier):
    auth = get_runtime().auth
    principal, _ = await _register(auth)

    logged_in, _ = await auth.login(identifier, PASSWORD)

    assert logged_in.id == principal.id


async def test_login_requires_fields():
    with pytest.raises(ValidationError):
        await get_runtime().auth.login("", PASSWORD)


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
async def test_authenticate_rejects_bad_headers(header):
    with pytest.raises(AuthenticationError) as exc_info:
        await get_runtime().auth.authenticate(header)
    assert exc_info.value.message == "Invalid header"


async def test_refresh_reloads_context_from_store():
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, tokens = await auth.login("erin", PASSWORD)
    auth.store.get_principal(principal.id).role = "user"

    rotated = await auth.refresh(tokens.refresh_token)

    ctx = await auth.authenticate(f"Bearer {rotated.access_token}")
    assert ctx.role == "user"


async def test_logout_revokes_issued_tokens():
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, tokens = await auth.login("erin", PASSWORD)

    await auth.logout(principal.id)

    with pytest.raises(SessionInvalidatedError):
        await auth.authenticate(f"Bearer {tokens.access_token}")
    with pytest.raises(SessionInvalidatedError):
        await auth.refresh(tokens.refresh_token)


async def test_second_login_supersedes_first_refresh_token():
    auth = get_runtime().auth
    await _register(auth)
    _, first = await auth.login("erin", PASSWORD)
    _, second = await auth.login("erin", PASSWORD)

    with pytest.raises(SessionInvalidatedError):
        await auth.refresh(first.refresh_token)
    # Reuse of the superseded token revoked the newer session too
    with pytest.raises(SessionInvalidatedError):
        await auth.refresh(second.refresh_token)


async def test_issue_token_starts_a_fresh_session():
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, login_tokens = await auth.login("erin", PASSWORD)

    issued = await auth.issue_token(principal.id)

    ctx = await auth.authenticate(f"Bearer {issued.access_token}")
    assert ctx.principal_id == principal.id
    assert ctx.username == "erin"
    assert auth.store.read_current_refresh_hash(principal.id) == auth.sessions.opaque.hash(
        issued.refresh_token
    )
    assert login_tokens.refresh_token != issued.refresh_token


async def test_issue_token_for_unknown_principal():
    with pytest.raises(NotFoundError):
        await get_runtime().auth.issue_token("missing")


async def test_change_password_revokes_every_session():
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, tokens = await auth.login("erin", PASSWORD)

    await auth.change_password(principal.id, PASSWORD, "N3wPassword")

    with pytest.raises(SessionInvalidatedError):
        await auth.authenticate(f"Bearer {tokens.access_token}")
    with pytest.raises(SessionInvalidatedError):
        await auth.refresh(tokens.refresh_token)
    with pytest.raises(AuthenticationError):
        await auth.login("erin", PASSWORD)
    logged_in, _ = await auth.login("erin", "N3wPassword")
    assert logged_in.id == principal.id


@pytest.mark.parametrize(
    "current,new,error",
    [
        ("Wr0ngPassword", "N3wPassword", AuthenticationError),
        (PASSWORD, "weak", ValidationError),
        ("", "N3wPassword", ValidationError),
    ],
)
async def test_rejected_password_change_keeps_sessions(current, new, error):
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, tokens = await auth.login("erin", PASSWORD)

    with pytest.raises(error):
        await auth.change_password(principal.id, current, new)

    ctx = await auth.authenticate(f"Bearer {tokens.access_token}")
    assert ctx.principal_id == principal.id
    assert auth.verify_password(auth.store.get_principal(principal.id), PASSWORD)


async def test_password_write_outage_still_revokes_sessions(monkeypatch):
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, tokens = await auth.login("erin", PASSWORD)

    def unavailable(principal_id, password_hash):
        raise StoreUnavailable("timeout")

    monkeypatch.setattr(auth.store, "update_password_hash", unavailable)

    with pytest.raises(StoreUnavailableError):
        await auth.change_password(principal.id, PASSWORD, "N3wPassword")

    with pytest.raises(SessionInvalidatedError):
        await auth.authenticate(f"Bearer {tokens.access_token}")
    assert auth.verify_password(auth.store.get_principal(principal.id), PASSWORD)


def _admin(org_id, role="admin"):
    return AuthContext(principal_id="admin-1", role=role, token_version=0, organization_id=org_id)


async def test_system_admin_resets_any_password():
    auth = get_runtime().auth
    principal, _ = await _register(auth)
    _, tokens = await auth.login("erin", PASSWORD)

    await auth.reset_password(_admin(SYSTEM_ORG_ID), principal.id, "Res3tPassword")

    with pytest.raises(SessionInvalidatedError):
        await auth.authenticate(f"Bearer {tokens.access_token}")
    logged_in, _ = await auth.login("erin", "Res3tPassword")
    assert logged_in.id == principal.id


async def test_org_admin_resets_only_own_members():
    auth = get_runtime().auth
    principal, org = await _register(auth)

    with pytest.raises(ForbiddenError):
        await auth.reset_password(_admin("other-org"), principal.id, "Res3tPassword")
    with pytest.raises(ForbiddenError):
        await auth.reset_password(_admin(org.id, role="user"), principal.id, "Res3tPassword")

    await auth.reset_password(_admin(org.id), principal.id, "Res3tPassword")
    assert auth.verify_password(auth.store.get_principal(principal.id), "Res3tPassword")


async def test_reset_password_for_unknown_principal():
    with pytest.raises(NotFoundError):
        await get_runtime().auth.reset_password(_admin(SYSTEM_ORG_ID), "missing", "Res3tPassword")
