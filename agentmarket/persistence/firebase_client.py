from __future__ import annotations

import os
import threading
from typing import Optional

import firebase_admin
import google.auth
from firebase_admin import credentials, firestore


_CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
_init_lock = threading.Lock()


def is_local_execution() -> bool:
    """
    Treat execution as local when ENV=local or when no managed runtime markers
    (K_SERVICE, CLOUD_RUN_JOB) are present.
    """
    if (os.getenv("ENV") or "").strip().lower() == "local":
        return True
    if (os.getenv("K_SERVICE") or "").strip():
        return False
    if (os.getenv("CLOUD_RUN_JOB") or "").strip():
        return False
    return True


def require_firestore_emulator_or_allow_prod(*, caller: str) -> None:
    """
    Fail closed locally unless FIRESTORE_EMULATOR_HOST is set or
    ALLOW_PROD_FIRESTORE=1 is given explicitly.
    """
    if not is_local_execution():
        return
    if (os.getenv("FIRESTORE_EMULATOR_HOST") or "").strip():
        return
    if (os.getenv("ALLOW_PROD_FIRESTORE") or "").strip() == "1":
        return
    raise RuntimeError(
        f"Refusing to use production Firestore from local execution (caller={caller}). "
        "Set FIRESTORE_EMULATOR_HOST (example: '127.0.0.1:8080') or ALLOW_PROD_FIRESTORE=1."
    )


def _resolve_project_id(explicit_project_id: Optional[str] = None) -> Optional[str]:
    if explicit_project_id:
        return explicit_project_id
    return os.getenv("FIREBASE_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or None


def init_firebase_admin(*, project_id: Optional[str] = None) -> None:
    """
    Initialize Firebase Admin SDK exactly once using Application Default Credentials.
    """
    require_firestore_emulator_or_allow_prod(caller="agentmarket.persistence.firebase_client.init_firebase_admin")

    if firebase_admin._apps:
        return

    with _init_lock:
        if firebase_admin._apps:
            return

        try:
            cred = credentials.ApplicationDefault()
        except Exception as e:
            raise RuntimeError(
                "Failed to load Application Default Credentials (ADC) for Firebase Admin SDK. "
                "Locally: run `gcloud auth application-default login`."
            ) from e

        resolved_project_id = _resolve_project_id(project_id)
        if not resolved_project_id:
            try:
                _, resolved_project_id = google.auth.default(scopes=[_CLOUD_PLATFORM_SCOPE])
            except Exception:
                resolved_project_id = None
        if not resolved_project_id:
            raise RuntimeError("Firebase project id could not be resolved. Set FIREBASE_PROJECT_ID.")

        firebase_admin.initialize_app(cred, {"projectId": resolved_project_id})


def get_firestore_client(*, project_id: Optional[str] = None):
    init_firebase_admin(project_id=project_id)
    return firestore.client()
