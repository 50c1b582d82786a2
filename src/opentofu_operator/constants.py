import os

API_GROUP = "opentofu.krateo.io"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

KIND_WORKSPACE = "Workspace"
PLURAL_WORKSPACES = "workspaces"
KIND_TFCONNECTOR = "TFConnector"
PLURAL_TFCONNECTORS = "tfconnectors"

FIELD_MANAGER = "opentofu-operator"

# Label keys
LABEL_MANAGED_BY = f"{API_GROUP}/managed-by"
LABEL_OWNER_NAME = f"{API_GROUP}/owner-name"
LABEL_OWNER_UID = f"{API_GROUP}/owner-uid"
LABEL_ACTION = f"{API_GROUP}/action"
# Set by the Job controller on every pod it creates
LABEL_JOB_NAME = "job-name"

# Condition types
COND_READY = "Ready"
COND_SYNCED = "Synced"

# Synced condition reasons
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"

# Event reasons
EVENT_JOB_CREATED = "JobCreated"
EVENT_JOB_SUCCEEDED = "JobSucceeded"
EVENT_JOB_FAILED = "JobFailed"
EVENT_DESTROY_SKIPPED = "DestroySkipped"

# Spec values
SOURCE_REMOTE = "Remote"
SOURCE_INLINE = "Inline"
DELETION_POLICY_DELETE = "Delete"

# Execution container layout
MOUNT_PATH = "/mnt"
MODULE_DIR = "workspace"
INLINE_MAIN_FILE = "main.tf"
CONFIGURATION_FILE = "opentofu-provider-config.tf"
JOB_BACKOFF_LIMIT = 1
LABEL_VALUE_MAX_LENGTH = 63

UNKNOWN_ERROR = "unknown error"

# Runtime configuration
OPENTOFU_IMAGE = os.getenv("OPENTOFU_IMAGE", "ghcr.io/opentofu/opentofu:latest")
GIT_IMAGE = os.getenv("GIT_IMAGE", "alpine/git:latest")
WORKSPACE_STORAGE_SIZE = os.getenv("WORKSPACE_STORAGE_SIZE", "1Gi")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "30"))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", "600"))
CLI_TIMEOUT_SECONDS = float(os.getenv("CLI_TIMEOUT_SECONDS", "300"))
METRICS_PORT = int(os.getenv("METRICS_PORT", "8080"))

# get-or-create attempts for supporting objects
INSTALL_MAX_ATTEMPTS = 3
INSTALL_RETRY_WAIT_SECONDS = 0.5
STATUS_UPDATE_MAX_ATTEMPTS = 3
