"""Read plan documents from YAML or JSON files."""

import json
from pathlib import Path
from typing import Any

import structlog
import yaml

from devflow.exceptions import PlanValidationError

log = structlog.get_logger(__name__)


def load_plan_document(path: str | Path) -> dict[str, Any]:
    """Load a plan document from disk.

    ``.json`` files are parsed as JSON; anything else is parsed as YAML
    (which also accepts JSON).

    Args:
        path: Path to the plan file.

    Returns:
        The raw plan document, ready for :func:`~devflow.models.plan.parse_plan`.

    Raises:
        PlanValidationError: If the file is missing, unreadable, not valid
            YAML/JSON, or does not contain a mapping.
    """
    plan_file = Path(path)
    if not plan_file.exists():
        raise PlanValidationError(f"Plan file not found: {plan_file}")

    try:
        content = plan_file.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanValidationError(f"Cannot read plan file: {plan_file}") from e

    try:
        if plan_file.suffix.lower() == ".json":
            document = json.loads(content)
        else:
            document = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PlanValidationError(f"Invalid syntax in plan file {plan_file}: {e}") from e

    if not isinstance(document, dict):
        raise PlanValidationError("Plan document must be a mapping, not a list or scalar")

    log.debug("plan_document_loaded", path=str(plan_file), steps=len(document.get("steps") or []))
    return document
