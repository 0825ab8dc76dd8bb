"""Main entry point for the OpenCTI Azure provisioner.

SECRETLESS ARCHITECTURE:
The provisioner runs with the operator's Azure CLI session (or a managed
identity in CI):
- NO service principal secrets or passwords are accepted
- The session is verified before any resource is touched
- Deployment credentials are passed through to the outputs, never logged
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path

from .bootstrap import BootstrapProvisioner, ProvisioningReport
from .config import Config, ConfigurationError
from .security import PreconditionError, SecretlessViolationError, get_credential, verify_session
from .session import AzureSession
from .spec_loader import SpecLoadError, load_spec

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION = 2

_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Extra fields passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


_handler: logging.Handler | None = None


def setup_logging(json_output: bool = True, level: int = logging.INFO) -> None:
    """Configure logging, JSON on stderr by default.

    stdout is reserved for the report and the extracted certificate. Calling
    it again replaces the previously installed handler.
    """
    global _handler

    root_logger = logging.getLogger()
    if _handler is not None:
        root_logger.removeHandler(_handler)

    _handler = logging.StreamHandler(sys.stderr)
    if json_output:
        _handler.setFormatter(JsonFormatter())
    else:
        _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root_logger.addHandler(_handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK and HTTP clients
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def exit_code_for(report: ProvisioningReport) -> int:
    return EXIT_SUCCESS if report.success else EXIT_FAILURE


def write_outputs(report: ProvisioningReport, path: Path) -> None:
    """Write the unredacted outputs for the deployment to ``path`` (mode 0600)."""
    if report.outputs is None:
        return
    payload = report.outputs.model_dump(include={"secrets", "variables"})
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


async def main(
    spec_file: Path | None = None,
    outputs_file: Path | None = None,
) -> int:
    """Run a full provisioning pass.

    Returns:
        Exit code (0 success, 1 failure or partial success, 2 precondition
        or security failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    if not config.enable_json_logging:
        setup_logging(json_output=False)

    try:
        spec = load_spec(spec_file or config.spec_file)
    except SpecLoadError as e:
        logger.error("Provisioning spec loading failed", extra={"error": str(e)})
        return EXIT_FAILURE

    try:
        credential = get_credential(
            tenant_id=config.tenant_id,
            managed_identity_client_id=config.managed_identity_client_id,
        )
        session_info = verify_session(credential, config.tenant_id)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_PRECONDITION
    except PreconditionError as e:
        logger.error("Azure session precondition failed", extra={"error": str(e)})
        return EXIT_PRECONDITION

    logger.info(
        "Starting OpenCTI provisioner",
        extra={
            "subscription_id": config.subscription_id,
            "tenant_id": session_info.tenant_id,
            "location": config.location,
            "resource_group": config.resource_group_name,
        },
    )

    session = AzureSession.create(credential, config.subscription_id, session_info.tenant_id)
    try:
        report = await BootstrapProvisioner(config, spec, session).provision()
    except Exception as e:
        logger.exception("Provisioning failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE
    finally:
        await session.close()

    if session_info.tenant_mismatch:
        report.warn(
            "session",
            "ARM and Graph tokens were issued by different tenants",
            "Run 'az login --tenant <tenant-id>' and re-run the provisioner",
        )

    if outputs_file is not None:
        write_outputs(report, outputs_file)
        logger.info(f"Deployment outputs written to {outputs_file}")

    print(json.dumps(report.to_dict(), indent=2))
    return exit_code_for(report)


def run() -> None:
    """Entry point for the provisioner without CLI options."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
