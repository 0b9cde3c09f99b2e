import math
from typing import AsyncGenerator, List, Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import access_resolver, catalog, grants, group_graph, schemas, users
from .db import async_session_factory
from .errors import DuplicateEdge, DuplicateValue, NotFoundError, ValidationFailure
from .logging_config import configure_logging
from .models import MemberType
from .settings import settings

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Access Console Service",
    version="1.0.0",
    description=(
        "Консоль управления доступами: пользователи, группы с вложенностью, "
        "сервисы, ресурсы и гранты.\n\n"
        "Отвечает на вопрос «какие доступы у пользователя есть на самом деле»; "
        "принудительную авторизацию запросов не выполняет."
    ),
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Зависимость FastAPI: выдаёт асинхронную сессию БД на время запроса."""
    async with async_session_factory() as session:
        yield session


def page_params(
    page: int = Query(1, ge=1, description="Номер страницы"),
    per_page: Optional[int] = Query(None, ge=1, description="Элементов на странице"),
) -> tuple:
    per_page = min(per_page or settings.default_per_page, settings.max_per_page)
    return page, per_page


def build_page(items, total: int, page: int, per_page: int) -> dict:
    return {
        "data": items,
        "meta": {
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": math.ceil(total / per_page) if per_page else 0,
        },
    }


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    status = 409 if isinstance(exc, (DuplicateEdge, DuplicateValue)) else 400
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def store_failure_handler(request: Request, exc: SQLAlchemyError):
    logger.error("store_failure", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Внутренняя ошибка хранилища"})


@app.get("/health", tags=["Техническое"], summary="Проверка здоровья")
async def health():
    """Возвращает статус готовности сервиса к обработке запросов."""
    return {"status": "ok"}


# Пользователи


@app.get(
    "/users",
    response_model=schemas.Page[schemas.UserOut],
    tags=["Пользователи"],
    summary="Список пользователей",
    description="Постраничный список с поиском по имени, фамилии, логину и отделу.",
)
async def list_users(
    search: Optional[str] = None,
    paging: tuple = Depends(page_params),
    session: AsyncSession = Depends(get_session),
):
    page, per_page = paging
    items, total = await users.list_users(session, page, per_page, search)
    return build_page(items, total, page, per_page)


@app.post(
    "/users",
    response_model=schemas.UserOut,
    status_code=201,
    tags=["Пользователи"],
    summary="Создать пользователя",
)
async def create_user(body: schemas.UserCreate, session: AsyncSession = Depends(get_session)):
    return await users.create_user(session, **body.model_dump())


@app.get(
    "/users/{user_id}",
    response_model=schemas.UserOut,
    tags=["Пользователи"],
    summary="Информация о пользователе",
)
async def get_user(user_id: str, session: AsyncSession = Depends(get_session)):
    return await users.get_user(session, user_id)


@app.put(
    "/users/{user_id}",
    response_model=schemas.UserOut,
    tags=["Пользователи"],
    summary="Обновить пользователя",
)
async def update_user(
    user_id: str, body: schemas.UserUpdate, session: AsyncSession = Depends(get_session)
):
    return await users.update_user(session, user_id, **body.model_dump(exclude_unset=True))


@app.delete(
    "/users/{user_id}",
    status_code=204,
    tags=["Пользователи"],
    summary="Удалить пользователя",
    description="Сначала удаляются членства пользователя в группах, затем сам пользователь.",
)
async def delete_user(user_id: str, session: AsyncSession = Depends(get_session)):
    await group_graph.delete_user(session, user_id)


@app.get(
    "/users/{user_id}/groups",
    response_model=List[schemas.GroupOut],
    tags=["Пользователи"],
    summary="Группы пользователя",
)
async def get_user_groups(user_id: str, session: AsyncSession = Depends(get_session)):
    return await group_graph.user_groups(session, user_id)


@app.get(
    "/users/{user_id}/access-rights",
    response_model=List[schemas.EffectiveAccessOut],
    tags=["Права пользователя"],
    summary="Эффективные доступы пользователя",
    description=(
        "Прямые гранты пользователя и гранты групп, в которых он состоит напрямую, "
        "с указанием ресурса, сервиса и происхождения."
    ),
)
async def get_user_access_rights(user_id: str, session: AsyncSession = Depends(get_session)):
    return await access_resolver.effective_access(session, user_id)


# Группы


@app.get(
    "/groups",
    response_model=schemas.Page[schemas.GroupOut],
    tags=["Группы"],
    summary="Список групп",
    description="Постраничный список с поиском по названию и описанию.",
)
async def list_groups(
    search: Optional[str] = None,
    paging: tuple = Depends(page_params),
    session: AsyncSession = Depends(get_session),
):
    page, per_page = paging
    items, total = await group_graph.list_groups(session, page, per_page, search)
    return build_page(items, total, page, per_page)


@app.post(
    "/groups",
    response_model=schemas.GroupOut,
    status_code=201,
    tags=["Группы"],
    summary="Создать группу",
)
async def create_group(body: schemas.GroupCreate, session: AsyncSession = Depends(get_session)):
    return await group_graph.create_group(session, **body.model_dump())


@app.get(
    "/groups/integrity",
    response_model=schemas.GraphIntegrityOut,
    tags=["Группы"],
    summary="Проверка ацикличности графа групп",
)
async def check_group_graph(session: AsyncSession = Depends(get_session)):
    cycle = await group_graph.verify_graph(session)
    return schemas.GraphIntegrityOut(acyclic=cycle is None, cycle=cycle or [])


@app.get(
    "/groups/{group_id}",
    response_model=schemas.GroupDetail,
    tags=["Группы"],
    summary="Информация о группе с участниками",
)
async def get_group(group_id: str, session: AsyncSession = Depends(get_session)):
    group = await group_graph.get_group(session, group_id)
    members = await group_graph.members_of(session, group_id)
    return schemas.GroupDetail(
        **schemas.GroupOut.model_validate(group).model_dump(), members=members
    )


@app.put(
    "/groups/{group_id}",
    response_model=schemas.GroupOut,
    tags=["Группы"],
    summary="Обновить группу",
)
async def update_group(
    group_id: str, body: schemas.GroupUpdate, session: AsyncSession = Depends(get_session)
):
    return await group_graph.update_group(session, group_id, **body.model_dump(exclude_unset=True))


@app.delete(
    "/groups/{group_id}",
    status_code=204,
    tags=["Группы"],
    summary="Удалить группу",
    description="Каскадно удаляет членства и связи вложенности группы.",
)
async def delete_group(group_id: str, session: AsyncSession = Depends(get_session)):
    await group_graph.delete_group(session, group_id)


@app.get(
    "/groups/{group_id}/members",
    response_model=List[schemas.MemberOut],
    tags=["Группы"],
    summary="Участники группы",
    description="Пользователи и вложенные группы (один уровень).",
)
async def get_group_members(group_id: str, session: AsyncSession = Depends(get_session)):
    return await group_graph.members_of(session, group_id)


@app.post(
    "/groups/{group_id}/members",
    status_code=201,
    tags=["Группы"],
    summary="Добавить участника группы",
    description=(
        "member_type='user' добавляет пользователя, 'group' вкладывает группу. "
        "Петли, дубликаты и циклы отклоняются без изменений в хранилище."
    ),
)
async def add_group_member(
    group_id: str, body: schemas.AddMemberRequest, session: AsyncSession = Depends(get_session)
):
    await group_graph.add_member(session, group_id, body.member_type, body.member_id)
    return {"added": True}


@app.delete(
    "/groups/{group_id}/members/{member_type}/{member_id}",
    tags=["Группы"],
    summary="Удалить участника группы",
    description="Идемпотентно: при отсутствии записи вернёт removed=0.",
)
async def remove_group_member(
    group_id: str,
    member_type: MemberType,
    member_id: str,
    session: AsyncSession = Depends(get_session),
):
    removed = await group_graph.remove_member(session, group_id, member_type, member_id)
    return {"removed": removed}


@app.get(
    "/groups/{group_id}/candidates",
    response_model=List[schemas.GroupOut],
    tags=["Группы"],
    summary="Группы-кандидаты для вложения",
    description=(
        "Все группы, кроме самой группы и её прямых потомков. "
        "transitive=true дополнительно исключает предков группы."
    ),
)
async def get_group_candidates(
    group_id: str,
    search: Optional[str] = None,
    transitive: bool = False,
    session: AsyncSession = Depends(get_session),
):
    return await group_graph.descendants_excluding_ancestors_of(
        session, group_id, search=search, transitive=transitive
    )


# Сервисы и ресурсы


@app.get(
    "/services",
    response_model=List[schemas.ServiceOut],
    tags=["Сервисы"],
    summary="Список сервисов с ресурсами",
)
async def list_services(session: AsyncSession = Depends(get_session)):
    return await catalog.list_services(session)


@app.post(
    "/services",
    response_model=schemas.ServiceOut,
    status_code=201,
    tags=["Сервисы"],
    summary="Создать сервис",
)
async def create_service(body: schemas.ServiceCreate, session: AsyncSession = Depends(get_session)):
    return await catalog.create_service(session, **body.model_dump())


@app.get(
    "/services/by-name/{name}",
    response_model=schemas.ServiceOut,
    tags=["Сервисы"],
    summary="Сервис по имени",
)
async def get_service_by_name(name: str, session: AsyncSession = Depends(get_session)):
    return await catalog.get_service_by_name(session, name)


@app.get(
    "/services/{service_id}",
    response_model=schemas.ServiceOut,
    tags=["Сервисы"],
    summary="Сервис с ресурсами",
)
async def get_service(service_id: str, session: AsyncSession = Depends(get_session)):
    return await catalog.get_service(session, service_id)


@app.put(
    "/services/{service_id}",
    response_model=schemas.ServiceOut,
    tags=["Сервисы"],
    summary="Обновить сервис",
)
async def update_service(
    service_id: str, body: schemas.ServiceUpdate, session: AsyncSession = Depends(get_session)
):
    return await catalog.update_service(session, service_id, **body.model_dump(exclude_unset=True))


@app.post(
    "/services/{service_id}/toggle",
    response_model=schemas.ServiceOut,
    tags=["Сервисы"],
    summary="Включить/выключить сервис",
)
async def toggle_service(service_id: str, session: AsyncSession = Depends(get_session)):
    return await catalog.toggle_service(session, service_id)


@app.delete(
    "/services/{service_id}",
    status_code=204,
    tags=["Сервисы"],
    summary="Удалить сервис",
    description="Каскадно удаляет ресурсы сервиса и их привязки доступов.",
)
async def delete_service(service_id: str, session: AsyncSession = Depends(get_session)):
    await catalog.delete_service(session, service_id)


@app.post(
    "/resources",
    response_model=schemas.ResourceOut,
    status_code=201,
    tags=["Ресурсы"],
    summary="Создать ресурс",
)
async def create_resource(body: schemas.ResourceCreate, session: AsyncSession = Depends(get_session)):
    fields = body.model_dump()
    service_id = fields.pop("service_id")
    return await catalog.create_resource(session, service_id, **fields)


@app.get(
    "/resources/{resource_id}",
    response_model=schemas.ResourceOut,
    tags=["Ресурсы"],
    summary="Информация о ресурсе",
)
async def get_resource(resource_id: str, session: AsyncSession = Depends(get_session)):
    return await catalog.get_resource(session, resource_id)


@app.put(
    "/resources/{resource_id}",
    response_model=schemas.ResourceOut,
    tags=["Ресурсы"],
    summary="Обновить ресурс",
)
async def update_resource(
    resource_id: str, body: schemas.ResourceUpdate, session: AsyncSession = Depends(get_session)
):
    return await catalog.update_resource(session, resource_id, **body.model_dump(exclude_unset=True))


@app.delete(
    "/resources/{resource_id}",
    status_code=204,
    tags=["Ресурсы"],
    summary="Удалить ресурс",
    description="Сначала снимаются привязки доступов ресурса.",
)
async def delete_resource(resource_id: str, session: AsyncSession = Depends(get_session)):
    await catalog.delete_resource(session, resource_id)


@app.get(
    "/resources/{resource_id}/access",
    response_model=schemas.ResourceAccessResponse,
    tags=["Ресурсы"],
    summary="Доступы ресурса",
    description="Возвращает список доступов, привязанных к ресурсу.",
)
async def resource_access(resource_id: str, session: AsyncSession = Depends(get_session)):
    accesses = await access_resolver.access_for_resource(session, resource_id)
    return schemas.ResourceAccessResponse(
        resource_id=resource_id,
        accesses=[schemas.AccessOut.model_validate(a) for a in accesses],
    )


# Доступы


@app.get(
    "/access",
    response_model=List[schemas.AccessOut],
    tags=["Доступы"],
    summary="Справочник доступов",
    description=(
        "Фильтр type: groups | roles | internal (иначе значение используется как есть); "
        "q: поиск по названию, источнику и типу без учёта регистра."
    ),
)
async def list_access(
    type: Optional[str] = None,
    q: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    return await access_resolver.access_list(session, filter_type=type, query=q)


@app.get(
    "/access/search",
    response_model=List[schemas.AccessOut],
    tags=["Доступы"],
    summary="Поиск доступов для подсказок",
)
async def search_access(q: str = "", session: AsyncSession = Depends(get_session)):
    return await access_resolver.search_access(session, q)


@app.post(
    "/access",
    response_model=schemas.AccessOut,
    status_code=201,
    tags=["Доступы"],
    summary="Создать описание доступа",
    description="source проверяется на существование пользователя или группы согласно user_type.",
)
async def create_access(body: schemas.AccessCreate, session: AsyncSession = Depends(get_session)):
    return await grants.create_access(session, **body.model_dump())


@app.post(
    "/access/save",
    response_model=schemas.SaveAccessResponse,
    tags=["Доступы"],
    summary="Сохранить набор доступов ресурса",
    description="Заменяет все привязки ресурса переданным набором; дубликаты игнорируются.",
)
async def save_access(body: schemas.SaveAccessRequest, session: AsyncSession = Depends(get_session)):
    linked = await grants.save_access(session, body.resource_id, body.access_ids)
    return schemas.SaveAccessResponse(resource_id=body.resource_id, access_ids=linked)


@app.get(
    "/access/{access_id}",
    response_model=schemas.AccessOut,
    tags=["Доступы"],
    summary="Информация о доступе",
)
async def get_access(access_id: str, session: AsyncSession = Depends(get_session)):
    return await access_resolver.get_access(session, access_id)


@app.delete(
    "/access/{access_id}",
    response_model=schemas.RemoveAccessResponse,
    tags=["Доступы"],
    summary="Отвязать доступ от ресурсов",
    description="purge=true дополнительно удаляет само описание доступа.",
)
async def remove_access(
    access_id: str, purge: bool = False, session: AsyncSession = Depends(get_session)
):
    removed = await grants.remove_access_grant(session, access_id, purge=purge)
    return schemas.RemoveAccessResponse(removed=removed)
