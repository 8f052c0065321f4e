import pytest
from firebase_admin import auth as firebase_auth
from unittest.mock import patch

from api.auth import (
    ANONYMOUS_USER_ID,
    AuthManager,
    FirebaseAuthManager,
    TokenValidation,
    authenticate,
    create_auth_manager,
    resolve_role,
)
from api.errors import AuthenticationError
from libs.common.settings import Settings

# Patch where 'auth' is USED, which is in 'api.auth'
AUTH_MODULE_PATH = 'api.auth.auth'


@pytest.fixture
def firebase_manager():
    settings = Settings(firebase_project_id="demo-project")
    with patch('api.auth.initialize_firebase_app'):
        yield FirebaseAuthManager(settings)


class RejectingManager(AuthManager):
    async def validate_token(self, token):
        return TokenValidation(valid=False, error="expired")


def test_resolve_role_precedence():
    assert resolve_role(["viewer", "admin"]) == "admin"
    assert resolve_role(["viewer"]) == "viewer"
    assert resolve_role([]) == "editor"
    assert resolve_role(["editor", "viewer"]) == "viewer"


@pytest.mark.asyncio
async def test_no_token_is_editor_on_fallback_workspace():
    context = await authenticate(None, None, RejectingManager(), Settings(fallback_workspace="acme"))

    assert context.user_id == ANONYMOUS_USER_ID
    assert context.role == "editor"
    assert context.workspace == "acme"
    assert context.authenticated is False


@pytest.mark.asyncio
async def test_channel_workspace_used_without_token():
    context = await authenticate("", "team-a", None, Settings())

    assert context.workspace == "team-a"


@pytest.mark.asyncio
async def test_invalid_token_raises():
    with pytest.raises(AuthenticationError):
        await authenticate("bad-token", "root", RejectingManager(), Settings())


@pytest.mark.asyncio
async def test_token_without_backend_falls_back():
    context = await authenticate("some-token", "root", None, Settings())

    assert context.role == "editor"
    assert context.authenticated is False


@pytest.mark.asyncio
@patch(f'{AUTH_MODULE_PATH}.verify_id_token')
async def test_firebase_token_claims(mock_verify_id_token, firebase_manager):
    # Arrange
    mock_verify_id_token.return_value = {'uid': 'user-42', 'roles': ['viewer'], 'workspace': 'team-b'}

    # Act
    context = await authenticate("fake-token", "root", firebase_manager, Settings())

    # Assert
    assert context.user_id == "user-42"
    assert context.role == "viewer"
    assert context.workspace == "team-b"
    assert context.authenticated is True
    mock_verify_id_token.assert_called_once_with("fake-token", check_revoked=False)


@pytest.mark.asyncio
@patch(f'{AUTH_MODULE_PATH}.verify_id_token')
async def test_firebase_single_role_string(mock_verify_id_token, firebase_manager):
    mock_verify_id_token.return_value = {'uid': 'user-1', 'roles': 'admin'}

    context = await authenticate("fake-token", "root", firebase_manager, Settings())

    assert context.role == "admin"
    assert context.workspace == "root"


@pytest.mark.asyncio
@patch(f'{AUTH_MODULE_PATH}.verify_id_token')
async def test_firebase_invalid_token(mock_verify_id_token, firebase_manager):
    mock_verify_id_token.side_effect = firebase_auth.InvalidIdTokenError("Token is invalid")

    validation = await firebase_manager.validate_token("fake-token")

    assert validation.valid is False
    with pytest.raises(AuthenticationError):
        await authenticate("fake-token", "root", firebase_manager, Settings())


@pytest.mark.asyncio
@patch(f'{AUTH_MODULE_PATH}.verify_id_token')
async def test_firebase_malformed_token(mock_verify_id_token, firebase_manager):
    mock_verify_id_token.side_effect = ValueError("Illegal ID token provided")

    validation = await firebase_manager.validate_token("not-a-jwt")

    assert validation.valid is False


def test_create_auth_manager_without_credentials():
    assert create_auth_manager(Settings()) is None


def test_create_auth_manager_with_project():
    with patch('api.auth.initialize_firebase_app') as mock_init:
        manager = create_auth_manager(Settings(firebase_project_id="demo-project"))

    assert isinstance(manager, FirebaseAuthManager)
    mock_init.assert_called_once()
