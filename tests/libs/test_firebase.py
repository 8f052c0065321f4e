import unittest
from unittest.mock import Mock, patch

from libs.common.settings import Settings
from libs.firebase.client import firebase_configured, initialize_firebase_app

# Target for patching should be the absolute path to the module
# This ensures that the mocks are applied correctly
FIREBASE_CLIENT_PATH = 'libs.firebase.client'


class TestFirebase(unittest.TestCase):

    @patch.dict(f'{FIREBASE_CLIENT_PATH}.firebase_admin._apps', {}, clear=True)
    @patch(f'{FIREBASE_CLIENT_PATH}.firebase_admin.initialize_app')
    @patch(f'{FIREBASE_CLIENT_PATH}.credentials.Certificate')
    def test_initialize_from_inline_json(self, mock_certificate, mock_initialize_app):
        # Arrange
        settings = Settings(firebase_admin_sdk_json='{"type": "service_account"}', firebase_project_id="demo")

        # Act
        initialize_firebase_app(settings)

        # Assert
        mock_certificate.assert_called_once_with({"type": "service_account"})
        mock_initialize_app.assert_called_once_with(mock_certificate.return_value, {"projectId": "demo"})

    @patch.dict(f'{FIREBASE_CLIENT_PATH}.firebase_admin._apps', {}, clear=True)
    @patch(f'{FIREBASE_CLIENT_PATH}.firebase_admin.initialize_app')
    @patch(f'{FIREBASE_CLIENT_PATH}.credentials.Certificate')
    def test_initialize_from_file(self, mock_certificate, mock_initialize_app):
        initialize_firebase_app(Settings(firebase_admin_sdk_path="/secrets/sa.json"))

        mock_certificate.assert_called_once_with("/secrets/sa.json")
        mock_initialize_app.assert_called_once_with(mock_certificate.return_value, None)

    @patch.dict(f'{FIREBASE_CLIENT_PATH}.firebase_admin._apps', {}, clear=True)
    @patch(f'{FIREBASE_CLIENT_PATH}.firebase_admin.initialize_app')
    def test_invalid_json_raises(self, mock_initialize_app):
        with self.assertRaises(ValueError):
            initialize_firebase_app(Settings(firebase_admin_sdk_json="{not json"))

        mock_initialize_app.assert_not_called()

    @patch.dict(f'{FIREBASE_CLIENT_PATH}.firebase_admin._apps', {'[DEFAULT]': Mock()}, clear=True)
    @patch(f'{FIREBASE_CLIENT_PATH}.firebase_admin.get_app')
    @patch(f'{FIREBASE_CLIENT_PATH}.firebase_admin.initialize_app')
    def test_existing_app_is_reused(self, mock_initialize_app, mock_get_app):
        app = initialize_firebase_app(Settings(firebase_project_id="demo"))

        self.assertIs(app, mock_get_app.return_value)
        mock_initialize_app.assert_not_called()

    def test_firebase_configured(self):
        self.assertFalse(firebase_configured(Settings()))
        self.assertTrue(firebase_configured(Settings(firebase_project_id="demo")))


if __name__ == '__main__':
    unittest.main()
