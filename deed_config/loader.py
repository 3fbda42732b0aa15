"""
Configuration Loader (``deed_config.loader``).

Responsibility
--------------
Loads the workflow YAML file, parses it into the frozen dataclasses of
``deed_config.schema`` and validates the result.  Runtime callers go
through ``deed_config.get_active_config()`` instead of calling this
module directly.

Architecture position
---------------------
**Config layer** -- sits above ``deed_kernel.domain`` (for the closed role
and form-type enumerations) and below the kernel services, which receive a
``WorkflowConfig`` by injection.

Invariants enforced
-------------------
* Every ``FormType`` has exactly one definition.
* Every role named anywhere is a reviewer role, and every pipeline
  satisfies the kernel ``Pipeline`` shape rules.
* Allowlists only name roles of the form type's pipeline; admin is never
  restricted.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the parsed
  YAML for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Structural problems  -> ``ValueError`` listing every problem found.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from deed_config.schema import ALL_FIELDS, FormTypeDef, PipelineDef, WorkflowConfig
from deed_kernel.domain.workflow import REVIEWER_ROLES, FormType, Role


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def parse_pipeline(name: str, data: dict[str, Any]) -> PipelineDef:
    """Parse a ``PipelineDef`` from its YAML mapping."""
    prereqs = data.get("prerequisites") or {}
    return PipelineDef(
        name=name,
        review_roles=_as_tuple(data["review_roles"]),
        final_roles=_as_tuple(data["final_roles"]),
        prerequisites=tuple(
            (role, _as_tuple(deps)) for role, deps in sorted(prereqs.items())
        ),
        verification_roles=_as_tuple(data.get("verification_roles")),
    )


def parse_form_type(form_type: str, data: dict[str, Any]) -> FormTypeDef:
    """Parse a ``FormTypeDef`` from its YAML mapping."""
    allowlists = data.get("field_allowlists") or {}
    return FormTypeDef(
        form_type=form_type,
        pipeline=data["pipeline"],
        required_fields=_as_tuple(data.get("required_fields")),
        field_allowlists=tuple(
            (role, _as_tuple(fields)) for role, fields in sorted(allowlists.items())
        ),
        description=data.get("description", ""),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def validate_config(config: WorkflowConfig) -> list[str]:
    """Return every structural problem found; an empty list means valid."""
    errors: list[str] = []
    role_names = {r.value for r in REVIEWER_ROLES}

    pipeline_names = [p.name for p in config.pipelines]
    if len(set(pipeline_names)) != len(pipeline_names):
        errors.append("Duplicate pipeline names")

    for p in config.pipelines:
        named = p.members
        for role, deps in p.prerequisites:
            named.add(role)
            named.update(deps)
        unknown = named - role_names
        if unknown:
            errors.append(
                f"Pipeline '{p.name}' names unknown roles: {sorted(unknown)}"
            )
            continue
        try:
            p.to_pipeline()
        except ValueError as exc:
            errors.append(str(exc))

    defined = [ft.form_type for ft in config.form_types]
    if len(set(defined)) != len(defined):
        errors.append("Duplicate form type definitions")
    known_types = {t.value for t in FormType}
    for name in sorted(set(defined) - known_types):
        errors.append(f"Unknown form type '{name}'")
    for name in sorted(known_types - set(defined)):
        errors.append(f"Form type '{name}' has no definition")

    for ft in config.form_types:
        if ft.pipeline not in pipeline_names:
            errors.append(
                f"Form type '{ft.form_type}' uses unknown pipeline '{ft.pipeline}'"
            )
            continue
        pipeline = config.pipeline_def(ft.pipeline)
        members = pipeline.members
        for role, fields in ft.field_allowlists:
            if role == Role.ADMIN.value:
                if fields != (ALL_FIELDS,):
                    errors.append(
                        f"Form type '{ft.form_type}' restricts admin visibility"
                    )
            elif role not in members:
                errors.append(
                    f"Form type '{ft.form_type}' has an allowlist for role "
                    f"'{role}' outside pipeline '{ft.pipeline}'"
                )
            if not fields:
                errors.append(
                    f"Form type '{ft.form_type}' role '{role}' has an empty allowlist"
                )

    return errors


def load_config(path: Path) -> WorkflowConfig:
    """
    Load, parse and validate a workflow configuration file.

    Raises:
        FileNotFoundError, yaml.YAMLError, KeyError: see module docstring.
        ValueError: if validation finds any problem.
    """
    data = load_yaml_file(path)
    config = WorkflowConfig(
        version=int(data.get("version", 1)),
        pipelines=tuple(
            parse_pipeline(name, body)
            for name, body in sorted((data.get("pipelines") or {}).items())
        ),
        form_types=tuple(
            parse_form_type(name, body)
            for name, body in sorted((data.get("form_types") or {}).items())
        ),
        checksum=compute_checksum(data),
        source=str(path),
    )

    errors = validate_config(config)
    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )
    return config
