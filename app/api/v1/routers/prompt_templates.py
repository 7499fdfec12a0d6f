"""
Prompt template administration API endpoints.

Thin HTTP surface over the template, assignment and override stores, the
tenant settings and the prompt builder. Domain errors propagate to the global exception
handlers, which map them to status codes.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import PromptCache
from app.core.database import get_db
from app.domain.prompt.content import content_from_payload, content_to_dict
from app.domain.prompt.errors import NotFoundError
from app.domain.repositories.postgres_prompt_repository import PostgresPromptRepository
from app.domain.repositories.prompt_repository import (
    AssignmentRecord,
    LanguageSettingRecord,
    OverrideHistoryRecord,
    OverrideRecord,
    PromptRepository,
    TemplateHistoryRecord,
    TemplateRecord,
    TopKSettingRecord,
)
from app.domain.services.assignment_service import AssignmentService
from app.domain.services.override_service import OverrideService
from app.domain.services.prompt_build_service import PromptBuildService
from app.domain.services.template_service import TemplateService
from app.domain.services.tenant_config_service import TenantConfigService
from app.domain.services.tenant_settings_service import TenantSettingsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prompt-template", tags=["prompt-templates"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_prompt_repository(db: AsyncSession = Depends(get_db)) -> PromptRepository:
    """Get prompt repository backed by PostgreSQL."""
    return PostgresPromptRepository(db)


def get_prompt_cache(request: Request) -> PromptCache:
    """The process-wide composition cache created at startup."""
    return request.app.state.prompt_cache


def get_template_service(
    repo: PromptRepository = Depends(get_prompt_repository),
    cache: PromptCache = Depends(get_prompt_cache),
) -> TemplateService:
    return TemplateService(repo, cache)


def get_assignment_service(
    repo: PromptRepository = Depends(get_prompt_repository),
    cache: PromptCache = Depends(get_prompt_cache),
) -> AssignmentService:
    return AssignmentService(repo, cache)


def get_override_service(
    repo: PromptRepository = Depends(get_prompt_repository),
    cache: PromptCache = Depends(get_prompt_cache),
) -> OverrideService:
    return OverrideService(repo, cache)


def get_prompt_build_service(
    repo: PromptRepository = Depends(get_prompt_repository),
    cache: PromptCache = Depends(get_prompt_cache),
) -> PromptBuildService:
    return PromptBuildService(repo, cache)


def get_tenant_config_service(
    repo: PromptRepository = Depends(get_prompt_repository),
    cache: PromptCache = Depends(get_prompt_cache),
) -> TenantConfigService:
    return TenantConfigService(repo, cache)


def get_tenant_settings_service(
    repo: PromptRepository = Depends(get_prompt_repository),
    cache: PromptCache = Depends(get_prompt_cache),
) -> TenantSettingsService:
    return TenantSettingsService(repo, cache)


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class SectionModel(BaseModel):
    key: int
    content: str = ""


class TemplateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    sections: List[SectionModel] = Field(default_factory=list)
    kind: str = Field("standard", description="standard, module or system-default")


class TemplateUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    sections: Optional[List[SectionModel]] = None
    kind: Optional[str] = None
    expected_version: Optional[int] = Field(
        None, description="Reject with 409 if the stored version differs"
    )


class TemplateResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    sections: List[Dict[str, Any]]
    version: int
    kind: str
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TemplateHistoryResponse(BaseModel):
    id: int
    template_id: int
    version: int
    sections: List[Dict[str, Any]]
    snapshotted_at: datetime
    modified_by: Optional[str] = None


class SectionInsertRequest(BaseModel):
    content: str
    insert_after_key: Optional[int] = None
    section_key: Optional[int] = None


class SectionInsertResponse(BaseModel):
    template_id: int
    section_key: int
    version: int
    affected_assignments: int


class AssignmentRequest(BaseModel):
    template_id: int


class AssignmentResponse(BaseModel):
    tenant_id: str
    flow_key: str
    template_id: int
    updated_at: datetime


class OverrideRequest(BaseModel):
    action: str = Field(..., description="add, modify or remove")
    content: Optional[str] = None
    is_module_section: bool = False
    module_id: Optional[int] = None
    module_name: Optional[str] = None
    original_module_section_key: Optional[int] = None
    parent_section_key: Optional[int] = None


class OverrideResponse(BaseModel):
    id: int
    tenant_id: str
    flow_key: str
    section_key: int
    action: str
    content: Dict[str, Any]
    modified_by: Optional[str] = None
    updated_at: datetime


class OverrideHistoryResponse(BaseModel):
    id: int
    override_id: Optional[int] = None
    section_key: int
    action: str
    content: Dict[str, Any]
    saved_at: datetime
    saved_by: Optional[str] = None


class RevertResponse(BaseModel):
    override: OverrideResponse
    content: str
    is_module_section: bool
    restored_from_history_id: int
    restored_saved_at: datetime
    restored_saved_by: Optional[str] = None


class PromptResponse(BaseModel):
    tenant_id: str
    flow_key: str
    prompt: Optional[str] = None


class TopKRequest(BaseModel):
    top_k: int = Field(..., description="Positive number of retrieved chunks")


class TopKResponse(BaseModel):
    tenant_id: str
    flow_key: str
    top_k: int
    updated_at: datetime


class LanguageRequest(BaseModel):
    language: str


class LanguageResponse(BaseModel):
    tenant_id: str
    language: str
    updated_at: datetime


# ===========================================================================
# Helper: Get User from Request
# ===========================================================================

def _get_user_info(request: Request) -> Dict[str, Any]:
    """Extract the calling user, falling back to a development identity."""
    user = getattr(request.state, "user", None)
    if user:
        return {
            "user_id": str(user.id) if hasattr(user, "id") else "unknown",
            "user_name": user.name if hasattr(user, "name") else "Admin User",
        }

    return {
        "user_id": "dev-user",
        "user_name": "Development User",
    }


def _template_to_response(record: TemplateRecord) -> TemplateResponse:
    return TemplateResponse(
        id=record.id,
        name=record.name,
        description=record.description,
        sections=record.sections,
        version=record.version,
        kind=record.kind,
        created_by=record.created_by,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _history_to_response(record: TemplateHistoryRecord) -> TemplateHistoryResponse:
    return TemplateHistoryResponse(
        id=record.id,
        template_id=record.template_id,
        version=record.version,
        sections=record.sections,
        snapshotted_at=record.snapshotted_at,
        modified_by=record.modified_by,
    )


def _assignment_to_response(record: AssignmentRecord) -> AssignmentResponse:
    return AssignmentResponse(
        tenant_id=record.tenant_id,
        flow_key=record.flow_key,
        template_id=record.template_id,
        updated_at=record.updated_at,
    )


def _override_to_response(record: OverrideRecord) -> OverrideResponse:
    return OverrideResponse(
        id=record.id,
        tenant_id=record.tenant_id,
        flow_key=record.flow_key,
        section_key=record.section_key,
        action=record.action,
        content=content_to_dict(record.content),
        modified_by=record.modified_by,
        updated_at=record.updated_at,
    )


def _override_history_to_response(record: OverrideHistoryRecord) -> OverrideHistoryResponse:
    return OverrideHistoryResponse(
        id=record.id,
        override_id=record.override_id,
        section_key=record.section_key,
        action=record.action,
        content=content_to_dict(record.content),
        saved_at=record.saved_at,
        saved_by=record.saved_by,
    )


def _topk_to_response(record: TopKSettingRecord) -> TopKResponse:
    return TopKResponse(
        tenant_id=record.tenant_id,
        flow_key=record.flow_key,
        top_k=record.top_k,
        updated_at=record.updated_at,
    )


def _language_to_response(record: LanguageSettingRecord) -> LanguageResponse:
    return LanguageResponse(
        tenant_id=record.tenant_id,
        language=record.language,
        updated_at=record.updated_at,
    )


# =============================================================================
# TEMPLATES
# =============================================================================

@router.get("/templates", response_model=List[TemplateResponse])
async def list_templates(
    kind: Optional[str] = Query(None, description="Filter by kind"),
    service: TemplateService = Depends(get_template_service),
) -> List[TemplateResponse]:
    templates = await service.list_templates(kind)
    return [_template_to_response(t) for t in templates]


@router.post(
    "/templates",
    response_model=TemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_template(
    body: TemplateCreateRequest,
    request: Request,
    service: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    user_info = _get_user_info(request)
    template = await service.create_template(
        name=body.name,
        description=body.description,
        sections=[s.model_dump() for s in body.sections],
        kind=body.kind,
        created_by=user_info["user_id"],
    )
    return _template_to_response(template)


@router.get("/modules", response_model=List[TemplateResponse])
async def list_modules(
    service: TemplateService = Depends(get_template_service),
) -> List[TemplateResponse]:
    return [_template_to_response(t) for t in await service.get_modules()]


@router.get("/system-default", response_model=TemplateResponse)
async def get_system_default(
    service: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    template = await service.get_system_default_template()
    if template is None:
        raise NotFoundError("Template", "system-default")
    return _template_to_response(template)


@router.get("/templates/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: int,
    service: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    return _template_to_response(await service.get_template(template_id))


@router.put("/templates/{template_id}", response_model=TemplateResponse)
async def update_template(
    template_id: int,
    body: TemplateUpdateRequest,
    request: Request,
    service: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    user_info = _get_user_info(request)
    template = await service.update_template(
        template_id,
        sections=[s.model_dump() for s in body.sections] if body.sections is not None else None,
        name=body.name,
        description=body.description,
        kind=body.kind,
        modified_by=user_info["user_id"],
        expected_version=body.expected_version,
    )
    return _template_to_response(template)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: int,
    service: TemplateService = Depends(get_template_service),
) -> Response:
    await service.delete_template(template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/templates/{template_id}/history", response_model=List[TemplateHistoryResponse])
async def list_template_history(
    template_id: int,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    service: TemplateService = Depends(get_template_service),
) -> List[TemplateHistoryResponse]:
    history = await service.list_template_history(template_id, limit)
    return [_history_to_response(h) for h in history]


@router.post(
    "/templates/{template_id}/sections",
    response_model=SectionInsertResponse,
    status_code=status.HTTP_201_CREATED,
)
async def insert_section(
    template_id: int,
    body: SectionInsertRequest,
    request: Request,
    service: TemplateService = Depends(get_template_service),
) -> SectionInsertResponse:
    user_info = _get_user_info(request)
    result = await service.insert_section(
        template_id,
        content=body.content,
        insert_after_key=body.insert_after_key,
        section_key=body.section_key,
        modified_by=user_info["user_id"],
    )
    return SectionInsertResponse(
        template_id=result.template_id,
        section_key=result.section_key,
        version=result.version,
        affected_assignments=result.affected_assignments,
    )


# =============================================================================
# ASSIGNMENTS
# =============================================================================

@router.get("/assignments/{tenant_id}", response_model=List[AssignmentResponse])
async def list_assignments(
    tenant_id: str,
    service: AssignmentService = Depends(get_assignment_service),
) -> List[AssignmentResponse]:
    return [_assignment_to_response(a) for a in await service.list_assignments(tenant_id)]


@router.put("/assignments/{tenant_id}/{flow_key}", response_model=AssignmentResponse)
async def upsert_assignment(
    tenant_id: str,
    flow_key: str,
    body: AssignmentRequest,
    service: AssignmentService = Depends(get_assignment_service),
) -> AssignmentResponse:
    assignment = await service.upsert_assignment(tenant_id, flow_key, body.template_id)
    return _assignment_to_response(assignment)


@router.delete("/assignments/{tenant_id}/{flow_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_assignment(
    tenant_id: str,
    flow_key: str,
    service: AssignmentService = Depends(get_assignment_service),
) -> Response:
    await service.delete_assignment(tenant_id, flow_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# OVERRIDES
# =============================================================================

@router.get("/overrides/{tenant_id}/{flow_key}", response_model=List[OverrideResponse])
async def list_overrides(
    tenant_id: str,
    flow_key: str,
    service: OverrideService = Depends(get_override_service),
) -> List[OverrideResponse]:
    return [_override_to_response(o) for o in await service.list_overrides(tenant_id, flow_key)]


@router.put(
    "/overrides/{tenant_id}/{flow_key}/{section_key}",
    response_model=OverrideResponse,
)
async def upsert_override(
    tenant_id: str,
    flow_key: str,
    section_key: int,
    body: OverrideRequest,
    request: Request,
    service: OverrideService = Depends(get_override_service),
) -> OverrideResponse:
    user_info = _get_user_info(request)
    content = content_from_payload(
        body.content,
        is_module_section=body.is_module_section,
        module_id=body.module_id,
        module_name=body.module_name,
        original_section_key=body.original_module_section_key,
        parent_section_key=body.parent_section_key,
    )
    override = await service.upsert_override(
        tenant_id,
        flow_key,
        section_key,
        action=body.action,
        content=content,
        modified_by=user_info["user_id"],
    )
    return _override_to_response(override)


@router.delete("/overrides/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_override(
    override_id: int,
    service: OverrideService = Depends(get_override_service),
) -> Response:
    await service.delete_override(override_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/overrides/{tenant_id}/{flow_key}/{section_key}/history",
    response_model=List[OverrideHistoryResponse],
)
async def get_override_history(
    tenant_id: str,
    flow_key: str,
    section_key: int,
    limit: Optional[int] = Query(None, ge=1, le=100),
    service: OverrideService = Depends(get_override_service),
) -> List[OverrideHistoryResponse]:
    if limit is None:
        history = await service.get_override_history(tenant_id, flow_key, section_key)
    else:
        history = await service.get_override_history(tenant_id, flow_key, section_key, limit)
    return [_override_history_to_response(h) for h in history]


@router.post(
    "/overrides/{tenant_id}/{flow_key}/{section_key}/revert",
    response_model=RevertResponse,
)
async def revert_override(
    tenant_id: str,
    flow_key: str,
    section_key: int,
    request: Request,
    service: OverrideService = Depends(get_override_service),
) -> RevertResponse:
    user_info = _get_user_info(request)
    result = await service.revert_override(
        tenant_id, flow_key, section_key, reverted_by=user_info["user_id"]
    )
    return RevertResponse(
        override=_override_to_response(result.override),
        content=result.content,
        is_module_section=result.is_module_section,
        restored_from_history_id=result.restored_from_history_id,
        restored_saved_at=result.restored_saved_at,
        restored_saved_by=result.restored_saved_by,
    )


# =============================================================================
# COMPOSITION
# =============================================================================

@router.get("/prompt/{tenant_id}/{flow_key}", response_model=PromptResponse)
async def build_prompt(
    tenant_id: str,
    flow_key: str,
    service: PromptBuildService = Depends(get_prompt_build_service),
) -> PromptResponse:
    prompt = await service.build_prompt(tenant_id, flow_key)
    return PromptResponse(tenant_id=tenant_id, flow_key=flow_key, prompt=prompt)


@router.get("/prompt/{tenant_id}/{flow_key}/rephrase", response_model=PromptResponse)
async def build_rephrase_prompt(
    tenant_id: str,
    flow_key: str,
    service: PromptBuildService = Depends(get_prompt_build_service),
) -> PromptResponse:
    prompt = await service.build_rephrase_prompt(tenant_id, flow_key)
    return PromptResponse(tenant_id=tenant_id, flow_key=flow_key, prompt=prompt)


@router.get("/config/{tenant_id}")
async def get_tenant_configuration(
    tenant_id: str,
    service: TenantConfigService = Depends(get_tenant_config_service),
) -> Dict[str, Any]:
    return await service.get_configuration(tenant_id)


# =============================================================================
# TENANT SETTINGS
# =============================================================================

@router.get("/topk/{tenant_id}", response_model=List[TopKResponse])
async def list_topk_settings(
    tenant_id: str,
    service: TenantSettingsService = Depends(get_tenant_settings_service),
) -> List[TopKResponse]:
    settings = await service.list_topk_settings(tenant_id)
    return [_topk_to_response(s) for s in settings]


@router.put("/topk/{tenant_id}/{flow_key}", response_model=TopKResponse)
async def set_topk(
    tenant_id: str,
    flow_key: str,
    body: TopKRequest,
    service: TenantSettingsService = Depends(get_tenant_settings_service),
) -> TopKResponse:
    setting = await service.set_topk(tenant_id, flow_key, body.top_k)
    return _topk_to_response(setting)


@router.delete("/topk/{tenant_id}/{flow_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_topk(
    tenant_id: str,
    flow_key: str,
    service: TenantSettingsService = Depends(get_tenant_settings_service),
) -> Response:
    await service.delete_topk(tenant_id, flow_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/language/{tenant_id}", response_model=LanguageResponse)
async def get_language(
    tenant_id: str,
    service: TenantSettingsService = Depends(get_tenant_settings_service),
) -> LanguageResponse:
    setting = await service.get_language(tenant_id)
    return _language_to_response(setting)


@router.put("/language/{tenant_id}", response_model=LanguageResponse)
async def set_language(
    tenant_id: str,
    body: LanguageRequest,
    service: TenantSettingsService = Depends(get_tenant_settings_service),
) -> LanguageResponse:
    setting = await service.set_language(tenant_id, body.language)
    return _language_to_response(setting)
