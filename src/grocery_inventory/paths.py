"""Document store path conventions."""

AGENT_INTERACTIONS = "agent_interactions"
AGENT_METRICS_GLOBAL = "agent_metrics/global"
AGENT_METRICS_DAILY = "agent_metrics_daily"
AGENT_METRICS_EVENTS = "agent_metrics_events"

INGESTION_JOBS_PATTERN = "users/{uid}/ingestion_jobs"
UPLOAD_JOBS_PATTERN = "users/{uid}/upload_jobs"
UPLOAD_BLOB_PATTERN = "uploads/{uid}/{uploadId}/{filename}"


def inventory_collection(uid: str) -> str:
    return f"users/{uid}/inventory"


def audit_log_collection(uid: str) -> str:
    return f"users/{uid}/audit_logs"


def ingestion_jobs_collection(uid: str) -> str:
    return f"users/{uid}/ingestion_jobs"


def ingestion_job_path(uid: str, job_id: str) -> str:
    return f"{ingestion_jobs_collection(uid)}/{job_id}"


def uploads_collection(uid: str) -> str:
    return f"users/{uid}/uploads"


def upload_path(uid: str, upload_id: str) -> str:
    return f"{uploads_collection(uid)}/{upload_id}"


def upload_jobs_collection(uid: str) -> str:
    return f"users/{uid}/upload_jobs"


def upload_job_path(uid: str, job_id: str) -> str:
    return f"{upload_jobs_collection(uid)}/{job_id}"


def upload_storage_path(uid: str, upload_id: str, filename: str) -> str:
    return f"uploads/{uid}/{upload_id}/{filename}"
