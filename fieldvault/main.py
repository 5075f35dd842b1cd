"""
Command entry point for the field-level encryption bootstrap.

Loads settings, runs the bootstrap sequence, and logs the outcome.

Exit codes:
    0: Key ready and verification passed
    1: Key fatal, or key ready but the post-provisioning phase failed
    2: Configuration error
"""
import sys
from typing import Optional

from fieldvault.config import Settings, load_settings
from fieldvault.exceptions import ConfigError
from fieldvault.services.bootstrap import BootstrapOrchestrator, BootstrapResult
from fieldvault.utils.logger import get_logger, setup_logging

logger = get_logger("main")


def report(result: BootstrapResult) -> None:
    """Log a bootstrap result without exposing key material."""
    logger.info(
        "Bootstrap finished",
        state=result.state.value,
        transitions="->".join(state.value for state in result.transitions),
        key_id=result.key_id_base64,
        created=result.created,
    )

    if result.verification is not None:
        logger.info(
            "Verification",
            passed=result.verification.passed,
            document_id=str(result.verification.document_id),
            opaque=",".join(
                f"{path}:{'yes' if ok else 'no'}"
                for path, ok in result.verification.opaque_fields.items()
            ),
        )

    if result.error is not None:
        logger.error(
            "Bootstrap reported an error",
            error_type=result.error.__class__.__name__,
            error=str(result.error),
        )


def main(settings: Optional[Settings] = None) -> int:
    """Run the bootstrap and return a process exit code."""
    if settings is None:
        try:
            settings = load_settings()
        except ConfigError as e:
            setup_logging()
            logger.error("Configuration error", error=str(e))
            return 2

    setup_logging(settings)
    logger.info(
        "Starting field-level encryption bootstrap",
        namespace=settings.namespace,
        key_vault=settings.key_vault_namespace,
        provider=settings.KMS_PROVIDER,
        alt_name=settings.KEY_ALT_NAME,
    )

    result = BootstrapOrchestrator(settings).run()
    report(result)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
