"""
fleetdeploy Constants

Centralized constants for magic values, defaults, and configuration.
"""

# Default SSH Configuration
DEFAULT_SSH_KEY_PATH = "project-mark-67.pem"
DEFAULT_SSH_USER = "ubuntu"
SSH_KEY_PERMISSIONS = 0o400
SSH_CONNECT_TIMEOUT = 30
SSH_UNREACHABLE_EXIT_CODE = 255

# Remote command timeouts (seconds)
DEFAULT_COMMAND_TIMEOUT = 120
CONVERGENCE_TIMEOUT = 900
FIRST_START_TIMEOUT = 600

# Settle delays (seconds)
TRUST_SETTLE_DELAY = 60
HEALTH_SETTLE_DELAY = 30
LOCAL_DOCKER_SETTLE_DELAY = 30
LOCAL_BACKEND_SETTLE_DELAY = 20
LOCAL_FRONTEND_SETTLE_DELAY = 15
LOCAL_MONGO_SETTLE_DELAY = 10

# Worker pool
DEFAULT_MAX_WORKERS = 4

# Terraform Configuration
TERRAFORM_DIR = "terraform"
TERRAFORM_VAR_FILE = "terraform.tfvars"
TERRAFORM_BACKEND_FILE = "backend.tf"
# Bucket chosen by an unfinished backend bootstrap, reused on the next run
TERRAFORM_BUCKET_FILE = ".state-bucket"
TERRAFORM_STATE_KEY = "puppet-infrastructure/terraform.tfstate"
TERRAFORM_LOCK_TABLE = "terraform-state-lock"
TERRAFORM_LOCK_MARKERS = (
    "Error acquiring the state lock",
    "ConditionalCheckFailedException",
)
TERRAFORM_LOCK_RETRY_ATTEMPTS = 5
TERRAFORM_LOCK_RETRY_DELAY = 10

# Provisioner output names per node role
DEFAULT_OUTPUT_NAMES = {
    "control": "puppet_master_public_ip",
    "frontend": "app_frontend_public_ip",
    "backend": "app_backend_public_ip",
}

# AWS Configuration
DEFAULT_AWS_REGION = "us-east-1"

# Puppet Configuration
PUPPET_BIN = "/opt/puppetlabs/bin"
PUPPETSERVER_CMD = f"{PUPPET_BIN}/puppetserver"
PUPPET_CMD = f"{PUPPET_BIN}/puppet"
PUPPET_MANIFESTS_DIR = "/etc/puppetlabs/code/environments/production/manifests"
PUPPET_MODULES_DIR = "/etc/puppetlabs/code/environments/production/modules"
PUPPET_ENVIRONMENT_DIR = "/etc/puppetlabs/code/environments/production"
LOCAL_MANIFESTS_DIR = "terraform/scripts/puppet-deploy-manifests"
MANIFEST_STAGING_DIR = "/tmp/puppet-deploy-manifests"
COMPOSE_FILE_NAME = "docker-compose.yml"
MAX_SIGN_ROUNDS = 2

# Puppet agent --test uses detailed exit codes: 0 = no changes, 2 = changes applied
CONVERGENCE_SUCCESS_EXIT_CODES = (0, 2)

# Agent output that means "certificate not signed yet" (expected on first run)
CERTIFICATE_WAIT_MARKERS = (
    "has not been signed",
    "no certificate found and waitforcert is disabled",
    "you might still need to sign this agent's certificate",
    "Couldn't fetch certificate from CA server",
)
NOTHING_TO_SIGN_MARKERS = (
    "No waiting certificate requests to sign",
    "No certificates to sign",
)

# Node-side paths
DEPLOY_ROOT = "/opt/todo-app"
NODE_STATE_DIR = "/var/lib/fleetdeploy"
NODE_INITIALIZED_MARKER = f"{NODE_STATE_DIR}/initialized"
ENV_FILE_NAME = ".env"
MANAGED_FILE_PATHS = ("/tmp/puppet-managed", "/tmp/{role}-node")

# Service endpoints per role: (scheme, port, health path, fallback path)
SERVICE_ENDPOINTS = {
    "control": ("https", 8140, "/status/v1/simple", None),
    "frontend": ("http", 3000, "/health", "/"),
    "backend": ("http", 8080, "/api/health", "/api/todos"),
}
HEALTH_PROBE_TIMEOUT = 3.0
HEALTH_RETRY_ATTEMPTS = 3
HEALTH_RETRY_DELAY = 10

# Local development
LOCAL_BACKEND_HEALTH_URL = "http://localhost:8080/actuator/health"
LOCAL_FRONTEND_URL = "http://localhost:3000"
LOCAL_LOGS_DIR = "logs"
LOCAL_BACKEND_DIR = "demo"
LOCAL_FRONTEND_DIR = "ui"
LOCAL_TEST_SCRIPT = "test-docker-deployment.sh"
LOCAL_CONTAINER_PREFIX = "todo-"
PROCESS_TERMINATE_TIMEOUT = 10
LOCAL_COMPOSE_CMD = ["docker-compose"]
LOCAL_MONGO_SERVICE = "mongodb"

# Registry
REGISTRY_USERNAME_KEY = "DOCKERHUB_USERNAME"
REGISTRY_TOKEN_KEY = "DOCKERHUB_TOKEN"

# CI secrets pushed to GitHub Actions
CI_SECRET_NAMES = [
    "DOCKERHUB_USERNAME",
    "DOCKERHUB_TOKEN",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_REGION",
    "EC2_SSH_KEY",
]

# Config file
CONFIG_FILE_NAME = "fleet.yml"

# Log Configuration
LOG_DATE_FORMAT = "%Y-%m-%d"
LOG_TIME_FORMAT = "%H-%M-%S"
SECRET_MASK = "********"

# Tool Names (prerequisite checks)
PROVISION_TOOLS = ("terraform", "aws")
