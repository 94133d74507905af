"""
Terraform Utilities

Terraform operations manager with type-safe outputs and error handling, plus
the one-time S3/DynamoDB state backend bootstrap.
"""

import getpass
import json
import subprocess
import time
from pathlib import Path
from typing import Optional, Callable, TypeVar

from fleetdeploy.config import FleetConfig
from fleetdeploy.constants import (
    TERRAFORM_BACKEND_FILE,
    TERRAFORM_BUCKET_FILE,
    TERRAFORM_LOCK_MARKERS,
    TERRAFORM_LOCK_RETRY_ATTEMPTS,
    TERRAFORM_LOCK_RETRY_DELAY,
)
from fleetdeploy.exceptions import ProvisionError, ProvisionerStateLocked
from fleetdeploy.logger import DeployLogger
from fleetdeploy.models.fleet import ProvisionerOutputs
from fleetdeploy.models.results import ExecutionResult
from fleetdeploy.utils import check_tool, retry_with_backoff

T = TypeVar("T")


def _run(
    cmd: list[str], cwd: Optional[Path], logger: Optional[DeployLogger]
) -> ExecutionResult:
    cmd_string = " ".join(cmd)
    if logger:
        logger.log_command(cmd_string)

    try:
        result = subprocess.run(
            cmd, cwd=cwd, capture_output=True, text=True, check=False
        )
    except OSError as e:
        raise ProvisionError(
            f"Failed to execute {cmd[0]}", context=f"Command: {cmd_string}, Error: {e}"
        )

    if logger:
        logger.log_output(result.stdout, "stdout")
        logger.log_output(result.stderr, "stderr")

    return ExecutionResult(
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        command=cmd_string,
    )


class TerraformManager:
    """
    Manages Terraform operations with clean interfaces.

    Responsibilities:
    - Initialize / validate / plan / apply
    - Output queries
    - State lock detection
    """

    def __init__(self, terraform_dir: Path, logger: Optional[DeployLogger] = None):
        """
        Initialize Terraform manager.

        Args:
            terraform_dir: Directory holding the Terraform configuration
            logger: Logger receiving commands and output
        """
        self.terraform_dir = terraform_dir
        self.logger = logger

    def _run_command(self, args: list[str], check: bool = True) -> ExecutionResult:
        """
        Run Terraform command.

        Args:
            args: Command arguments (e.g., ['output', '-json'])
            check: Whether to raise exception on failure

        Returns:
            ExecutionResult object

        Raises:
            ProvisionerStateLocked: If Terraform could not acquire the state lock
            ProvisionError: If command fails and check=True
        """
        exec_result = _run(["terraform"] + args, self.terraform_dir, self.logger)

        if check and exec_result.is_failure:
            diagnostic = exec_result.stderr.strip() or exec_result.stdout.strip()
            if any(marker in exec_result.output for marker in TERRAFORM_LOCK_MARKERS):
                raise ProvisionerStateLocked(
                    f"Terraform state is locked: {exec_result.command}",
                    context=diagnostic,
                )
            raise ProvisionError(
                f"Terraform command failed: {exec_result.command}",
                context=diagnostic,
            )

        return exec_result

    def init(self) -> ExecutionResult:
        return self._run_command(["init", "-input=false", "-no-color"])

    def validate(self) -> ExecutionResult:
        return self._run_command(["validate", "-no-color"])

    def plan(self, var_file: Path) -> ExecutionResult:
        return self._run_command(
            ["plan", "-input=false", "-no-color", f"-var-file={var_file}"]
        )

    def apply(self, var_file: Path, auto_approve: bool = True) -> ExecutionResult:
        """
        Apply Terraform configuration.

        Args:
            var_file: Path to the variable file
            auto_approve: Auto-approve changes

        Raises:
            ProvisionError: If apply fails
        """
        args = [
            "apply",
            "-input=false",
            "-no-color",
            "-compact-warnings",
            f"-var-file={var_file}",
        ]
        if auto_approve:
            args.append("-auto-approve")
        return self._run_command(args)

    def get_outputs(self, output_names: Optional[dict] = None) -> ProvisionerOutputs:
        """
        Get Terraform outputs.

        Returns:
            ProvisionerOutputs (absent outputs are None)

        Raises:
            ProvisionError: If the command fails or returns invalid JSON
        """
        result = self._run_command(["output", "-json"])

        if not result.stdout.strip():
            return ProvisionerOutputs()

        try:
            raw_outputs = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProvisionError("Could not parse Terraform outputs", context=str(e))

        return ProvisionerOutputs.from_terraform(raw_outputs, output_names)


class StateBackendBootstrapper:
    """
    One-time remote state backend (S3 bucket + DynamoDB lock table).

    Idempotent: an existing backend.tf means the backend is configured and
    nothing is created; an existing bucket or table is reused. A generated
    bucket name is written to .state-bucket before anything is created, so a
    run that failed halfway resumes with the same bucket.
    """

    def __init__(
        self,
        terraform_dir: Path,
        region: str,
        lock_table: str,
        state_key: str,
        logger: Optional[DeployLogger] = None,
        bucket_name_factory: Optional[Callable[[], str]] = None,
        bucket: Optional[str] = None,
    ):
        self.terraform_dir = terraform_dir
        self.region = region
        self.lock_table = lock_table
        self.state_key = state_key
        self.logger = logger
        self.bucket_name_factory = bucket_name_factory or self._default_bucket_name
        self.bucket = bucket

    @staticmethod
    def _default_bucket_name() -> str:
        return f"terraform-state-{int(time.time())}-{getpass.getuser()}".lower()

    @property
    def backend_file(self) -> Path:
        return self.terraform_dir / TERRAFORM_BACKEND_FILE

    def is_configured(self) -> bool:
        return self.backend_file.exists()

    @property
    def bucket_file(self) -> Path:
        return self.terraform_dir / TERRAFORM_BUCKET_FILE

    def resolve_bucket(self) -> str:
        """Configured bucket, else the one remembered from an earlier run, else a new one."""
        if self.bucket:
            return self.bucket
        if self.bucket_file.exists():
            remembered = self.bucket_file.read_text().strip()
            if remembered:
                return remembered
        bucket = self.bucket_name_factory()
        self.bucket_file.write_text(bucket + "\n")
        return bucket

    def _aws(self, args: list[str], check: bool = True) -> ExecutionResult:
        result = _run(["aws"] + args + ["--region", self.region], None, self.logger)
        if check and result.is_failure:
            raise ProvisionError(
                f"AWS command failed: aws {' '.join(args[:2])}",
                context=result.stderr.strip() or result.stdout.strip(),
            )
        return result

    def _check_aws(self) -> None:
        if not check_tool("aws"):
            raise ProvisionError(
                "AWS CLI is not installed", context="Install it to create the backend"
            )
        if self._aws(["sts", "get-caller-identity"], check=False).is_failure:
            raise ProvisionError(
                "AWS credentials not configured", context="Run 'aws configure' first"
            )

    def _ensure_bucket(self, bucket: str) -> None:
        if self._aws(["s3api", "head-bucket", "--bucket", bucket], check=False).is_success:
            if self.logger:
                self.logger.log(f"S3 bucket {bucket} already exists")
            return

        create = ["s3api", "create-bucket", "--bucket", bucket]
        # us-east-1 rejects an explicit LocationConstraint
        if self.region != "us-east-1":
            create += [
                "--create-bucket-configuration",
                f"LocationConstraint={self.region}",
            ]
        self._aws(create)

        self._aws(
            [
                "s3api",
                "put-bucket-versioning",
                "--bucket",
                bucket,
                "--versioning-configuration",
                "Status=Enabled",
            ]
        )
        self._aws(
            [
                "s3api",
                "put-bucket-encryption",
                "--bucket",
                bucket,
                "--server-side-encryption-configuration",
                json.dumps(
                    {
                        "Rules": [
                            {
                                "ApplyServerSideEncryptionByDefault": {
                                    "SSEAlgorithm": "AES256"
                                }
                            }
                        ]
                    }
                ),
            ]
        )
        self._aws(
            [
                "s3api",
                "put-public-access-block",
                "--bucket",
                bucket,
                "--public-access-block-configuration",
                "BlockPublicAcls=true,IgnorePublicAcls=true,"
                "BlockPublicPolicy=true,RestrictPublicBuckets=true",
            ]
        )

    def _ensure_lock_table(self) -> None:
        describe = ["dynamodb", "describe-table", "--table-name", self.lock_table]
        if self._aws(describe, check=False).is_success:
            if self.logger:
                self.logger.log(f"DynamoDB table {self.lock_table} already exists")
            return

        self._aws(
            [
                "dynamodb",
                "create-table",
                "--table-name",
                self.lock_table,
                "--attribute-definitions",
                "AttributeName=LockID,AttributeType=S",
                "--key-schema",
                "AttributeName=LockID,KeyType=HASH",
                "--provisioned-throughput",
                "ReadCapacityUnits=5,WriteCapacityUnits=5",
            ]
        )
        self._aws(
            ["dynamodb", "wait", "table-exists", "--table-name", self.lock_table]
        )

    def render_backend(self, bucket: str) -> str:
        return f"""terraform {{
  backend "s3" {{
    bucket         = "{bucket}"
    key            = "{self.state_key}"
    region         = "{self.region}"
    dynamodb_table = "{self.lock_table}"
    encrypt        = true
  }}
}}
"""

    def ensure(self) -> bool:
        """
        Create the backend if absent.

        Returns:
            True if the backend was created, False if it already existed

        Raises:
            ProvisionError: If the AWS CLI is missing or a creation step fails
        """
        if self.is_configured():
            return False

        self._check_aws()
        bucket = self.resolve_bucket()
        self._ensure_bucket(bucket)
        self._ensure_lock_table()
        self.backend_file.write_text(self.render_backend(bucket))
        self.bucket_file.unlink(missing_ok=True)
        return True


class InfrastructureProvisioner:
    """
    Turns the versioned Terraform configuration into running nodes.

    provision() is safe to re-run: a matching infrastructure is a no-op apply.
    """

    def __init__(
        self,
        config: FleetConfig,
        logger: Optional[DeployLogger] = None,
        terraform: Optional[TerraformManager] = None,
        backend: Optional[StateBackendBootstrapper] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.logger = logger
        self.terraform = terraform or TerraformManager(config.terraform_dir, logger)
        self.backend = backend or StateBackendBootstrapper(
            config.terraform_dir,
            region=config.terraform.region,
            lock_table=config.terraform.lock_table,
            state_key=config.terraform.state_key,
            logger=logger,
            bucket=config.terraform.state_bucket,
        )
        self.sleep = sleep

    def _check_inputs(self, var_file: Path) -> None:
        if not self.config.terraform_dir.is_dir():
            raise ProvisionError(
                "Terraform directory not found",
                context=str(self.config.terraform_dir),
            )
        if not var_file.is_file():
            raise ProvisionError(
                f"{var_file.name} not found",
                context=f"Copy {var_file.name}.example to {var_file.name} "
                "and update it with your values",
            )

    def _with_lock_retry(self, operation: Callable[[], T]) -> T:
        def on_retry(attempt, error):
            if self.logger:
                self.logger.warning(
                    f"Terraform state locked, retrying (attempt {attempt})"
                )

        return retry_with_backoff(
            operation,
            attempts=TERRAFORM_LOCK_RETRY_ATTEMPTS,
            delay=TERRAFORM_LOCK_RETRY_DELAY,
            retry_on=(ProvisionerStateLocked,),
            on_retry=on_retry,
            sleep=self.sleep,
        )

    def ensure_backend(self) -> bool:
        created = self.backend.ensure()
        if self.logger:
            if created:
                self.logger.success("Terraform backend created (S3 + DynamoDB)")
            else:
                self.logger.success("Backend already configured")
        return created

    def provision(self, var_file: Optional[Path] = None) -> ProvisionerOutputs:
        """
        Create or update the infrastructure.

        Args:
            var_file: Variable file (defaults to the configured terraform.tfvars)

        Returns:
            ProvisionerOutputs with the node addresses

        Raises:
            ProvisionError: On missing inputs, backend failure or plan/apply failure
        """
        var_file = var_file or self.config.var_file_path
        self._check_inputs(var_file)
        self.ensure_backend()

        self._with_lock_retry(self.terraform.init)
        self.terraform.validate()
        self._with_lock_retry(lambda: self.terraform.plan(var_file))
        self._with_lock_retry(lambda: self.terraform.apply(var_file))

        return self.read_outputs()

    def read_outputs(self) -> ProvisionerOutputs:
        """
        Read the current address outputs.

        Raises:
            ProvisionError: If the Terraform directory is missing or output fails
        """
        if not self.config.terraform_dir.is_dir():
            raise ProvisionError(
                "Terraform directory not found",
                context=str(self.config.terraform_dir),
            )
        return self._with_lock_retry(
            lambda: self.terraform.get_outputs(self.config.terraform.outputs)
        )
