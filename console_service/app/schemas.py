from typing import Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import AccessType, MemberType, SubjectType

T = TypeVar("T")


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PageMeta(BaseModel):
    """Метаданные страницы: всего записей, номер страницы, размер, число страниц."""

    total: int
    page: int
    per_page: int
    total_pages: int


class Page(BaseModel, Generic[T]):
    data: List[T]
    meta: PageMeta


def _not_null(value):
    # поле можно не передавать, но явный null для NOT NULL колонки недопустим
    if value is None:
        raise ValueError("значение не может быть null")
    return value


# Пользователи


class UserCreate(BaseModel):
    login: str = Field(min_length=1, max_length=100)
    email: EmailStr
    last_name: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    middle_name: Optional[str] = None
    department: Optional[str] = None
    division: Optional[str] = None


class UserUpdate(BaseModel):
    login: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    last_name: Optional[str] = None
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    department: Optional[str] = None
    division: Optional[str] = None

    check_required = field_validator("login", "email", "last_name", "first_name")(_not_null)


class UserOut(ORMModel):
    """Пользователь без учётных данных."""

    id: str
    login: str
    email: str
    full_name: str
    last_name: str
    first_name: str
    middle_name: Optional[str] = None
    department: Optional[str] = None
    division: Optional[str] = None
    source: str


class EffectiveAccessOut(ORMModel):
    """
    Эффективный доступ пользователя:
    - resource_name / service_name: ресурс и его сервис
    - access_type: READ / WRITE / ADMIN
    - permission: название права
    - assigned_through: 'Прямое назначение' или 'Группа <id>'
    """

    resource_name: str
    service_name: str
    access_type: AccessType
    permission: str
    assigned_through: str


# Группы


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    comment: Optional[str] = None


class GroupUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    comment: Optional[str] = None

    check_required = field_validator("name")(_not_null)


class GroupOut(ORMModel):
    id: str
    name: str
    description: Optional[str] = None
    comment: Optional[str] = None
    source: str


class MemberOut(BaseModel):
    """Участник группы: пользователь или вложенная группа."""

    id: str
    type: MemberType
    name: str


class GroupDetail(GroupOut):
    members: List[MemberOut]


class AddMemberRequest(BaseModel):
    """Запрос на добавление участника: member_type='user'|'group' и id участника."""

    member_type: MemberType
    member_id: str


class GraphIntegrityOut(BaseModel):
    acyclic: bool
    cycle: List[str] = []


# Сервисы и ресурсы


class ServiceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    enabled: bool = True


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    enabled: Optional[bool] = None

    check_required = field_validator("name", "enabled")(_not_null)


class ResourceCreate(BaseModel):
    service_id: str
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[str] = None


class ResourceUpdate(BaseModel):
    service_id: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    type: Optional[str] = None

    check_required = field_validator("service_id", "name")(_not_null)


class ResourceOut(ORMModel):
    id: str
    service_id: str
    name: str
    description: Optional[str] = None
    type: Optional[str] = None


class ServiceOut(ORMModel):
    id: str
    name: str
    description: Optional[str] = None
    enabled: bool
    resources: List[ResourceOut] = []


# Доступы


class AccessCreate(BaseModel):
    user_type: SubjectType
    source: str
    type: AccessType
    name: str = Field(min_length=1, max_length=200)
    category: Optional[str] = None


class AccessOut(ORMModel):
    """Описание доступа: кому (user_type + source), какой (type) и как называется."""

    id: str
    user_type: SubjectType
    source: str
    type: AccessType
    name: str
    category: Optional[str] = None


class ResourceAccessResponse(BaseModel):
    """Ответ с перечнем доступов, привязанных к ресурсу."""

    resource_id: str
    accesses: List[AccessOut]


class SaveAccessRequest(BaseModel):
    """Полный новый набор доступов ресурса (replace-семантика)."""

    resource_id: str
    access_ids: List[str]


class SaveAccessResponse(BaseModel):
    success: Literal[True] = True
    resource_id: str
    access_ids: List[str]


class RemoveAccessResponse(BaseModel):
    success: Literal[True] = True
    removed: int
