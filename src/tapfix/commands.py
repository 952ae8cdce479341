from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from tapfix.config import (
    merge_payload,
    rewrite_config,
    rewrite_defaults,
    runtime_defaults,
)
from tapfix.rewrite.engine import RewriteEngine
from tapfix.rewrite.model import RewriteConfig, RewritePlan, RewriteRequest
from tapfix.schema import (
    RewriteRequestDTO,
    RewriteResponse,
    SiteReportDTO,
    TextEditDTO,
)


def build_config(
    request: RewriteRequestDTO,
    *,
    root: Path | None = None,
    config_path: Path | None = None,
) -> RewriteConfig:
    """Layer explicit request options over the ``tapfix.toml`` defaults."""
    overrides = request.model_dump(exclude={"paths", "write"})
    section = merge_payload(
        overrides, rewrite_defaults(root=root, config_path=config_path)
    )
    return rewrite_config(
        section, runtime_defaults(root=root, config_path=config_path)
    )


def plan_response(plan: RewritePlan) -> RewriteResponse:
    return RewriteResponse(
        edits=[
            TextEditDTO(
                path=edit.path,
                start=edit.start,
                end=edit.end,
                replacement=edit.replacement,
            )
            for edit in plan.edits
        ],
        sites=[
            SiteReportDTO(
                path=site.path,
                line=site.line,
                column=site.column,
                callback=site.callback,
                kind=site.kind,
                status=site.status.value,
                reason=site.reason,
                listener=site.listener,
                buckets=site.buckets,
            )
            for site in plan.sites
        ],
        warnings=plan.warnings,
        errors=plan.errors,
    )


def execute_rewrite(
    payload: dict,
    *,
    root: Path | None = None,
    config_path: Path | None = None,
) -> tuple[RewritePlan, dict]:
    try:
        request = RewriteRequestDTO.model_validate(payload)
    except ValidationError as exc:
        plan = RewritePlan(errors=[str(exc)])
        return plan, plan_response(plan).model_dump()
    config = build_config(request, root=root, config_path=config_path)
    engine = RewriteEngine(config=config, project_root=root)
    plan = engine.plan_rewrite(RewriteRequest(paths=request.paths, write=request.write))
    return plan, plan_response(plan).model_dump()
