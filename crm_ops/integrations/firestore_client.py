"""
Fábrica del cliente de Firestore (firebase-admin).
"""
import logging
import os
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore

from crm_ops.config import settings
from crm_ops.utils.error_handler import with_error_handling

logger = logging.getLogger(__name__)

# Lotes de escritura de Firestore: máximo 500 operaciones por commit
MAX_BATCH_SIZE = 500


class FirestoreConfigError(Exception):
    """Error de configuración de Firebase/Firestore."""
    pass


def _initialize_app(credentials_path: Optional[str] = None, project_id: Optional[str] = None):
    """Inicializa firebase_admin una sola vez por proceso."""
    if firebase_admin._apps:
        return firebase_admin.get_app()

    cred_path = credentials_path or settings.FIREBASE_CREDENTIALS_PATH
    project = project_id or settings.FIREBASE_PROJECT_ID
    options = {"projectId": project} if project else None

    if cred_path:
        if not os.path.exists(cred_path):
            raise FirestoreConfigError(f"Archivo de credenciales no encontrado: {cred_path}")
        cred = credentials.Certificate(cred_path)
        logger.info(f"Inicializando Firebase con la cuenta de servicio {cred_path}")
    elif project:
        # Application Default Credentials (gcloud / entorno GCP)
        cred = credentials.ApplicationDefault()
        logger.info(f"Inicializando Firebase con credenciales por defecto (proyecto {project})")
    else:
        raise FirestoreConfigError(
            "Configure FIREBASE_CREDENTIALS_PATH o FIREBASE_PROJECT_ID para acceder a Firestore"
        )

    return firebase_admin.initialize_app(cred, options)


def get_firestore_client(credentials_path: Optional[str] = None, project_id: Optional[str] = None):
    """
    Retorna un cliente de Firestore listo para usar.

    Raises:
        FirestoreConfigError: Si faltan credenciales o el archivo no existe
    """
    app = _initialize_app(credentials_path, project_id)
    return firestore.client(app)


# Lecturas y escrituras: pasan por el manejo de errores y las métricas de "firestore"

@with_error_handling("firestore", context={"operation": "stream"})
def stream_documents(query) -> List[Any]:
    """Ejecuta una consulta (o colección) y retorna los snapshots."""
    return list(query.stream())


@with_error_handling("firestore", context={"operation": "get"})
def get_document(ref):
    return ref.get()


@with_error_handling("firestore", context={"operation": "update"})
def update_document(ref, data: Dict[str, Any]) -> None:
    ref.update(data)


@with_error_handling("firestore", context={"operation": "commit"})
def commit_batch(batch) -> None:
    batch.commit()
