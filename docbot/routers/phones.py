from typing import Dict, List

import structlog
from fastapi import APIRouter, Depends, HTTPException

from ..deps import Services, get_services
from ..schemas import FileInfo, PhoneGroup, PhonePromptRequest, PhoneSettingsUpdate, UnboundMapping
from ..services import repository

router = APIRouter(tags=["phones"])
logger = structlog.get_logger(__name__)

@router.get("/phones", response_model=List[PhoneGroup])
async def phone_groups(services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        rows = await repository.all_mappings_with_documents(session)
        counts = await repository.chunk_counts(session)

    groups: Dict[str, PhoneGroup] = {}
    for mapping, doc in rows:
        group = groups.get(mapping.phone_number)
        if group is None:
            group = groups[mapping.phone_number] = PhoneGroup(
                phone_number=mapping.phone_number,
                intent=mapping.intent,
                system_prompt=mapping.system_prompt,
                auth_token=mapping.auth_token or "",
                origin=mapping.origin or "",
            )
        if doc is not None:
            group.files.append(FileInfo(id=doc.id, name=doc.name, file_type=doc.file_type,
                                        chunk_count=counts.get(doc.id, 0), created_at=doc.created_at))
    return list(groups.values())

@router.post("/phones/settings")
async def update_phone_settings(req: PhoneSettingsUpdate, services: Services = Depends(get_services)):
    if not req.phone_number:
        raise HTTPException(400, "Phone number is required")
    values = req.model_dump(exclude={"phone_number"}, exclude_unset=True)
    async with services.session_factory() as session:
        async with session.begin():
            if not await repository.mapping_rows(session, req.phone_number):
                raise HTTPException(404, "Phone number not found")
            await repository.update_tenant_settings(session, req.phone_number, values)
    logger.info("phone_settings_updated", phone_number=req.phone_number, fields=sorted(values))
    return {"success": True, "message": "Phone settings updated successfully"}

@router.post("/phones/prompt")
async def set_phone_prompt(req: PhonePromptRequest, services: Services = Depends(get_services)):
    """Store intent + system prompt before any document is uploaded (or update them after)."""
    async with services.session_factory() as session:
        async with session.begin():
            rows = await repository.mapping_rows(session, req.phone_number)
            if rows:
                values = {"system_prompt": req.system_prompt}
                if req.intent is not None:
                    values["intent"] = req.intent
                await repository.update_tenant_settings(session, req.phone_number, values)
                created = False
            else:
                await repository.insert_mapping(session, UnboundMapping(
                    phone_number=req.phone_number, intent=req.intent, system_prompt=req.system_prompt,
                ))
                created = True
    return {"success": True, "created": created}
