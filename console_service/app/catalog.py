"""
Справочник сервисов и ресурсов. Удаление каскадно снимает привязки доступов.
"""
from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from .db import transaction
from .errors import DuplicateValue, ResourceNotFound, ServiceNotFound
from .models import Resource, Service

logger = structlog.get_logger(__name__)


async def _require_service(session: AsyncSession, service_id: str) -> Service:
    service = await repo.get_service(session, service_id)
    if service is None:
        raise ServiceNotFound(service_id=service_id)
    return service


async def _require_resource(session: AsyncSession, resource_id: str) -> Resource:
    resource = await repo.get_resource(session, resource_id)
    if resource is None:
        raise ResourceNotFound(resource_id=resource_id)
    return resource


async def list_services(session: AsyncSession) -> List[Service]:
    return await repo.list_services(session)


async def get_service(session: AsyncSession, service_id: str) -> Service:
    return await _require_service(session, service_id)


async def get_service_by_name(session: AsyncSession, name: str) -> Service:
    service = await repo.get_service_by_name(session, name)
    if service is None:
        raise ServiceNotFound(name=name)
    return service


async def create_service(
    session: AsyncSession, name: str, description: Optional[str] = None, enabled: bool = True
) -> Service:
    async with transaction(session):
        if await repo.get_service_by_name(session, name) is not None:
            raise DuplicateValue("Сервис с таким именем уже существует", name=name)
        service = Service(name=name, description=description, enabled=enabled, resources=[])
        session.add(service)
        await session.flush()
    logger.info("service_created", service_id=service.id, name=name)
    return service


async def update_service(session: AsyncSession, service_id: str, **fields) -> Service:
    async with transaction(session):
        service = await _require_service(session, service_id)
        name = fields.get("name")
        if name and name != service.name and await repo.get_service_by_name(session, name):
            raise DuplicateValue("Сервис с таким именем уже существует", name=name)
        for key, value in fields.items():
            setattr(service, key, value)
    logger.info("service_updated", service_id=service_id, fields=sorted(fields))
    return service


async def toggle_service(session: AsyncSession, service_id: str) -> Service:
    """Инвертировать флаг enabled сервиса."""
    async with transaction(session):
        service = await _require_service(session, service_id)
        service.enabled = not service.enabled
    logger.info("service_toggled", service_id=service_id, enabled=service.enabled)
    return service


async def delete_service(session: AsyncSession, service_id: str) -> None:
    """
    Удалить сервис: привязки доступов всех его ресурсов, ресурсы, затем сервис.
    """
    async with transaction(session):
        service = await _require_service(session, service_id)
        resource_ids = await repo.resource_ids_of_service(session, service_id)
        links = await repo.delete_resource_links(session, resource_ids=resource_ids)
        await repo.delete_resources(session, resource_ids)
        await repo.delete_by_id(session, Service, service.id)
    logger.info("service_deleted", service_id=service_id, resources=len(resource_ids), links=links)


async def get_resource(session: AsyncSession, resource_id: str) -> Resource:
    return await _require_resource(session, resource_id)


async def create_resource(session: AsyncSession, service_id: str, **fields) -> Resource:
    async with transaction(session):
        await _require_service(session, service_id)
        resource = Resource(service_id=service_id, **fields)
        session.add(resource)
        await session.flush()
    logger.info("resource_created", resource_id=resource.id, service_id=service_id)
    return resource


async def update_resource(session: AsyncSession, resource_id: str, **fields) -> Resource:
    async with transaction(session):
        resource = await _require_resource(session, resource_id)
        if fields.get("service_id"):
            await _require_service(session, fields["service_id"])
        for key, value in fields.items():
            setattr(resource, key, value)
    logger.info("resource_updated", resource_id=resource_id, fields=sorted(fields))
    return resource


async def delete_resource(session: AsyncSession, resource_id: str) -> None:
    """Удалить ресурс после снятия всех его привязок доступов."""
    async with transaction(session):
        resource = await _require_resource(session, resource_id)
        links = await repo.delete_resource_links(session, resource_ids=[resource_id])
        await repo.delete_by_id(session, Resource, resource.id)
    logger.info("resource_deleted", resource_id=resource_id, links=links)
