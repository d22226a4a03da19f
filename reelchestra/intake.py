"""
Intake - the thin surface between callers and the compiler/ledger.

submit_treatment takes the raw request body ({"treatment": ..., "constraints": ...})
and returns plain dicts, so an HTTP handler or the CLI can serialize the
result directly. Validation problems surface as ValidationError, whose
to_dict() is the structured error body.
"""

import logging
from typing import Any, Optional

from reelchestra.compiler import BlueprintCompiler
from reelchestra.errors import ValidationError
from reelchestra.ledger import JobLedger
from reelchestra.schemas import OutputConstraints, Treatment

logger = logging.getLogger(__name__)


def parse_request(data: Any) -> tuple[Treatment, OutputConstraints]:
    """
    Parse a submission body into a treatment and output constraints.

    Raises:
        ValidationError: Body is not a mapping or a section is malformed
    """
    if not isinstance(data, dict):
        raise ValidationError("Submission must be a mapping with 'treatment' and 'constraints'")

    missing = [key for key in ("treatment", "constraints") if not isinstance(data.get(key), dict)]
    if missing:
        raise ValidationError(
            "Submission is incomplete",
            [f"Missing or invalid section: '{key}'" for key in missing],
        )

    try:
        treatment = Treatment.from_dict(data["treatment"])
        constraints = OutputConstraints.from_dict(data["constraints"])
    except ValidationError:
        raise
    except (TypeError, ValueError, KeyError) as e:
        raise ValidationError(f"Malformed submission: {e}")

    return treatment, constraints


def submit_treatment(
    compiler: BlueprintCompiler,
    data: Any,
    user_id: str,
    manifest_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Compile and persist a treatment submission.

    Args:
        compiler: Compiler bound to a ledger (and optionally a notifier)
        data: {"treatment": {...}, "constraints": {...}}
        user_id: Owning user
        manifest_id: Optional caller-chosen manifest id

    Returns:
        {"manifest_id": str, "job_count": int, "warnings": [str]}

    Raises:
        ValidationError: Submission rejected, nothing persisted
        PersistenceError: Ledger write failed, nothing persisted
    """
    if not user_id:
        raise ValidationError("user_id is required")

    treatment, constraints = parse_request(data)
    try:
        result = compiler.submit(treatment, constraints, user_id, manifest_id=manifest_id)
    except ValidationError as e:
        logger.info(f"Rejected treatment '{treatment.title}' from {user_id}: {e.errors}")
        raise
    return result.to_dict()


def get_manifest_status(ledger: JobLedger, manifest_id: str) -> Optional[dict[str, Any]]:
    """
    Manifest, per-status summary and every job (status, attempts, result, error).

    Returns:
        Status dict, or None if the manifest does not exist
    """
    manifest = ledger.get_manifest(manifest_id)
    if manifest is None:
        return None

    jobs = ledger.get_jobs_by_manifest(manifest_id)
    summary = ledger.summarize_manifest(manifest_id)
    return {
        "manifest": manifest.to_dict(),
        "summary": summary.to_dict() if summary else None,
        "jobs": [job.to_dict() for job in jobs],
    }
