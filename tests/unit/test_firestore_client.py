"""
Pruebas unitarias para la inicialización de Firestore.
"""

from unittest.mock import Mock, patch

import pytest

from crm_ops.integrations import firestore_client
from crm_ops.integrations.firestore_client import FirestoreConfigError, get_firestore_client


class TestFirestoreClient:
    """Pruebas para get_firestore_client."""

    @pytest.fixture(autouse=True)
    def no_apps(self):
        """Simula un proceso sin apps de Firebase inicializadas."""
        with patch.dict("firebase_admin._apps", {}, clear=True):
            yield

    def test_missing_configuration(self):
        """Sin credenciales ni proyecto se lanza un error de configuración."""
        with patch.object(firestore_client, "settings") as mock_settings:
            mock_settings.FIREBASE_CREDENTIALS_PATH = ""
            mock_settings.FIREBASE_PROJECT_ID = ""
            with pytest.raises(FirestoreConfigError):
                get_firestore_client()

    def test_missing_credentials_file(self, tmp_path):
        """Un archivo de credenciales inexistente es un error."""
        with pytest.raises(FirestoreConfigError):
            get_firestore_client(credentials_path=str(tmp_path / "no-existe.json"))

    def test_service_account(self, tmp_path):
        """Con archivo de credenciales se usa Certificate."""
        cred_file = tmp_path / "sa.json"
        cred_file.write_text("{}")
        app = Mock()

        with patch("firebase_admin.credentials.Certificate") as mock_cert, \
                patch("firebase_admin.initialize_app", return_value=app) as mock_init, \
                patch("firebase_admin.firestore.client") as mock_client:
            get_firestore_client(credentials_path=str(cred_file), project_id="crm-prod")

        mock_cert.assert_called_once_with(str(cred_file))
        mock_init.assert_called_once_with(mock_cert.return_value, {"projectId": "crm-prod"})
        mock_client.assert_called_once_with(app)

    def test_application_default(self):
        """Sin archivo pero con proyecto se usan las credenciales por defecto."""
        with patch.object(firestore_client, "settings") as mock_settings, \
                patch("firebase_admin.credentials.ApplicationDefault") as mock_adc, \
                patch("firebase_admin.initialize_app") as mock_init, \
                patch("firebase_admin.firestore.client"):
            mock_settings.FIREBASE_CREDENTIALS_PATH = ""
            mock_settings.FIREBASE_PROJECT_ID = ""
            get_firestore_client(project_id="crm-prod")

        mock_adc.assert_called_once()
        mock_init.assert_called_once_with(mock_adc.return_value, {"projectId": "crm-prod"})

    def test_reuses_existing_app(self):
        """Si ya hay una app inicializada no se vuelve a inicializar."""
        app = Mock()
        with patch.dict("firebase_admin._apps", {"[DEFAULT]": app}), \
                patch("firebase_admin.get_app", return_value=app), \
                patch("firebase_admin.initialize_app") as mock_init, \
                patch("firebase_admin.firestore.client") as mock_client:
            get_firestore_client()

        mock_init.assert_not_called()
        mock_client.assert_called_once_with(app)
