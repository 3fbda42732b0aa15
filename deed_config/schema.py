"""
Workflow configuration schema.

Defines the human-authored configuration artifact for the verification
workflow: which pipeline each form type runs through, which payload fields
must be present before submission, and which fields each reviewer role may
see and edit.  YAML is parsed into these types by the loader.

Key distinction:
  PipelineDef / FormTypeDef = source artifact (strings, as authored)
  Pipeline                  = kernel value object used at runtime
"""

from __future__ import annotations

from dataclasses import dataclass, field

from deed_kernel.domain.workflow import FormType, Pipeline, Role

# Allowlist marker meaning "every payload field".
ALL_FIELDS = "*"


@dataclass(frozen=True)
class PipelineDef:
    """Reviewer stages shared by a family of form types."""

    name: str
    review_roles: tuple[str, ...]
    final_roles: tuple[str, ...]
    prerequisites: tuple[tuple[str, tuple[str, ...]], ...] = ()
    verification_roles: tuple[str, ...] = ()

    @property
    def members(self) -> set[str]:
        return (
            set(self.review_roles)
            | set(self.verification_roles)
            | set(self.final_roles)
        )

    def to_pipeline(self) -> Pipeline:
        return Pipeline(
            name=self.name,
            review_roles=tuple(Role(r) for r in self.review_roles),
            final_roles=tuple(Role(r) for r in self.final_roles),
            prerequisites=tuple(
                (Role(role), frozenset(Role(p) for p in prereqs))
                for role, prereqs in self.prerequisites
            ),
            verification_roles=tuple(Role(r) for r in self.verification_roles),
        )


@dataclass(frozen=True)
class FormTypeDef:
    """Per-form-type rules: pipeline, required fields, field allowlists."""

    form_type: str
    pipeline: str
    required_fields: tuple[str, ...] = ()
    # (role, fields); fields == ("*",) grants every field.
    field_allowlists: tuple[tuple[str, tuple[str, ...]], ...] = ()
    description: str = ""

    def allowlist_for(self, role: Role) -> frozenset[str] | None:
        """Fields visible to ``role``; None means all fields.

        Admin always sees everything.  A reviewer role without an entry
        sees nothing.
        """
        if role is Role.ADMIN:
            return None
        for name, fields in self.field_allowlists:
            if name == role.value:
                if ALL_FIELDS in fields:
                    return None
                return frozenset(fields)
        return frozenset()


@dataclass(frozen=True)
class WorkflowConfig:
    """The complete, validated workflow configuration."""

    version: int
    pipelines: tuple[PipelineDef, ...]
    form_types: tuple[FormTypeDef, ...]
    checksum: str = ""
    source: str = ""
    _pipeline_cache: dict[str, Pipeline] = field(
        default_factory=dict, compare=False, repr=False,
    )

    def pipeline_def(self, name: str) -> PipelineDef:
        for p in self.pipelines:
            if p.name == name:
                return p
        raise KeyError(f"Unknown pipeline: {name}")

    def form_type_def(self, form_type: FormType | str) -> FormTypeDef:
        key = form_type.value if isinstance(form_type, FormType) else form_type
        for ft in self.form_types:
            if ft.form_type == key:
                return ft
        raise KeyError(f"Unknown form type: {key}")

    def pipeline_for(self, form_type: FormType | str) -> Pipeline:
        """Kernel Pipeline for a form type (built once per config)."""
        name = self.form_type_def(form_type).pipeline
        pipeline = self._pipeline_cache.get(name)
        if pipeline is None:
            pipeline = self.pipeline_def(name).to_pipeline()
            self._pipeline_cache[name] = pipeline
        return pipeline

    def required_fields(self, form_type: FormType | str) -> tuple[str, ...]:
        return self.form_type_def(form_type).required_fields

    def visible_fields(
        self, form_type: FormType | str, role: Role,
    ) -> frozenset[str] | None:
        return self.form_type_def(form_type).allowlist_for(role)
