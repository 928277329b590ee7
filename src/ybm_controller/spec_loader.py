"""Plan and state file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_STATE_FILE_SIZE_BYTES
from .models import ResourceKind, ResourceModel, get_model_class

logger = logging.getLogger(__name__)

PLAN_API_VERSION = "ybm/v1"
STATE_FORMAT_VERSION = 1


class SpecLoadError(Exception):
    """Raised when plan or state loading or validation fails."""

    pass


@dataclass(frozen=True)
class PlannedResource:
    """One declared resource of a plan."""

    kind: ResourceKind
    name: str
    spec: ResourceModel

    @property
    def key(self) -> str:
        return f"{self.kind.value}/{self.name}"


def _read_bounded(path: Path, max_bytes: int, what: str) -> str:
    if not path.exists():
        raise SpecLoadError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what.lower()} {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{what} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what.lower()} {path}: {e}") from e


def _validation_message(source: str, error: ValidationError) -> str:
    # Format Pydantic validation errors for readability
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def parse_document(raw: Any, source: str) -> PlannedResource:
    """Validate one plan document.

    Raises:
        SpecLoadError: If the document is malformed or fails validation.
    """
    if not isinstance(raw, dict):
        raise SpecLoadError(f"Plan document must be a YAML mapping: {source}")

    api_version = raw.get("apiVersion")
    if api_version != PLAN_API_VERSION:
        raise SpecLoadError(
            f"Unsupported apiVersion '{api_version}' in {source}; expected '{PLAN_API_VERSION}'"
        )

    kind = raw.get("kind")
    try:
        model_class = get_model_class(str(kind))
    except ValueError as e:
        raise SpecLoadError(f"{source}: {e}") from e

    metadata = raw.get("metadata") or {}
    name = metadata.get("name") if isinstance(metadata, dict) else None
    if not isinstance(name, str) or not name:
        raise SpecLoadError(f"metadata.name is required: {source}")

    spec_data = raw.get("spec")
    if not isinstance(spec_data, dict):
        raise SpecLoadError(f"Spec section must be a mapping: {source}")

    try:
        spec = model_class.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(_validation_message(f"{source} ({kind}/{name})", e)) from e

    return PlannedResource(kind=ResourceKind(kind), name=name, spec=spec)


def load_plan(paths: list[Path]) -> list[PlannedResource]:
    """Load every resource declared in the given plan files, in file order.

    Raises:
        SpecLoadError: On unreadable files, invalid YAML, invalid documents or
            duplicate <kind>/<name> keys.
    """
    resources: list[PlannedResource] = []
    seen: set[str] = set()

    for path in paths:
        content = _read_bounded(path, MAX_SPEC_FILE_SIZE_BYTES, "Plan file")
        try:
            documents = [d for d in yaml.safe_load_all(content) if d is not None]
        except yaml.YAMLError as e:
            raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

        for index, document in enumerate(documents):
            resource = parse_document(document, f"{path}#{index}")
            if resource.key in seen:
                raise SpecLoadError(f"Duplicate resource {resource.key} in {path}")
            seen.add(resource.key)
            resources.append(resource)

    logger.info(
        "Loaded plan", extra={"files": [str(p) for p in paths], "resource_count": len(resources)}
    )
    return resources


# =============================================================================
# Persisted state
# =============================================================================


def load_state(path: Path) -> dict[str, ResourceModel]:
    """Load the persisted state; a missing file is an empty state.

    Raises:
        SpecLoadError: If the file is unreadable or malformed.
    """
    if not path.exists():
        return {}

    content = _read_bounded(path, MAX_STATE_FILE_SIZE_BYTES, "State file")
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("resources"), dict):
        raise SpecLoadError(f"State file must contain a 'resources' mapping: {path}")

    states: dict[str, ResourceModel] = {}
    for key, entry in raw["resources"].items():
        kind, _, _ = key.partition("/")
        try:
            model_class = get_model_class(kind)
            states[key] = model_class.model_validate(entry)
        except ValueError as e:
            # ValidationError is a ValueError
            raise SpecLoadError(f"Invalid state entry {key} in {path}: {e}") from e
        id_field = model_class.ID_FIELD
        if id_field is not None and not getattr(states[key], id_field):
            raise SpecLoadError(f"State entry {key} in {path} has no {id_field}")
    return states


def save_state(path: Path, states: dict[str, ResourceModel]) -> None:
    """Write the state atomically (temp file, then rename).

    SECURITY: The state holds write-only secrets, so the file is created 0600.
    """
    payload = {
        "version": STATE_FORMAT_VERSION,
        "resources": {
            key: state.model_dump(mode="json") for key, state in sorted(states.items())
        },
    }
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
    os.replace(tmp_path, path)
    logger.debug("Saved state", extra={"path": str(path), "resource_count": len(states)})
