import enum
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_id() -> str:
    return str(uuid.uuid4())


class SubjectType(str, enum.Enum):
    """Тип субъекта, на которого выдан доступ."""

    USER = "USER"
    GROUP = "GROUP"


class AccessType(str, enum.Enum):
    READ = "READ"
    WRITE = "WRITE"
    ADMIN = "ADMIN"


class MemberType(str, enum.Enum):
    USER = "user"
    GROUP = "group"


@dataclass(frozen=True)
class UserSubject:
    id: str


@dataclass(frozen=True)
class GroupSubject:
    id: str


Subject = Union[UserSubject, GroupSubject]

LOCAL_SOURCE = "LOCAL"


class User(Base):
    """
    Пользователь консоли.
    Поля:
    - login, email: уникальные идентификаторы для входа
    - password: учётные данные; хранятся и проверяются внешним слоем аутентификации
    - last_name / first_name / middle_name: ФИО
    - department / division: подразделение
    Связи:
    - memberships: членство в группах (`GroupMembership`)
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    login: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    password: Mapped[Optional[str]] = mapped_column(String(200))
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    middle_name: Mapped[Optional[str]] = mapped_column(String(100))
    department: Mapped[Optional[str]] = mapped_column(String(200))
    division: Mapped[Optional[str]] = mapped_column(String(200))
    source: Mapped[str] = mapped_column(String(50), default=LOCAL_SOURCE, nullable=False)

    memberships: Mapped[list["GroupMembership"]] = relationship(
        "GroupMembership", back_populates="user", passive_deletes=True
    )

    @property
    def full_name(self) -> str:
        return f"{self.last_name} {self.first_name} {self.middle_name or ''}".strip()


class Group(Base):
    """
    Группа пользователей. Может содержать пользователей (`GroupMembership`)
    и другие группы (`GroupRelation`, направленное ребро родитель→потомок).
    Уникальность имени не гарантируется.
    """

    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[str] = mapped_column(String(50), default=LOCAL_SOURCE, nullable=False)

    memberships: Mapped[list["GroupMembership"]] = relationship(
        "GroupMembership", back_populates="group", passive_deletes=True
    )


class GroupMembership(Base):
    """
    Членство пользователя в группе.
    Уникальность (group_id, user_id) предотвращает повторные назначения.
    """

    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    group: Mapped[Group] = relationship("Group", back_populates="memberships")
    user: Mapped[User] = relationship("User", back_populates="memberships")

    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_member"),)


class GroupRelation(Base):
    """
    Вложенность групп: child_group входит в parent_group.
    Множество рёбер обязано оставаться ациклическим; петли запрещены
    ограничением ck_group_relation_not_self, дубликаты через uq_group_relation.
    """

    __tablename__ = "group_relations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    parent_group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    child_group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )

    child_group: Mapped[Group] = relationship("Group", foreign_keys=[child_group_id])

    __table_args__ = (
        UniqueConstraint(
            "parent_group_id", "child_group_id", name="uq_group_relation"
        ),
        CheckConstraint(
            "parent_group_id <> child_group_id", name="ck_group_relation_not_self"
        ),
    )


class Service(Base):
    """Сервис, владелец набора ресурсов; может быть выключен флагом enabled."""

    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    resources: Mapped[list["Resource"]] = relationship(
        "Resource",
        back_populates="service",
        order_by="Resource.name",
        passive_deletes=True,
    )


class Resource(Base):
    """
    Ресурс сервиса, на который выдаются доступы.
    Связи:
    - service: сервис-владелец
    - accesses: привязки доступов (`ResourceAccess`)
    """

    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[Optional[str]] = mapped_column(String(100))
    service_id: Mapped[str] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True
    )

    service: Mapped[Service] = relationship("Service", back_populates="resources")
    accesses: Mapped[list["ResourceAccess"]] = relationship(
        "ResourceAccess", back_populates="resource", passive_deletes=True
    )


class Access(Base):
    """
    Описание доступа (грант): кому (user_type + source) и какой (type).
    Поля:
    - user_type: USER или GROUP
    - source: id пользователя или группы, в зависимости от user_type
    - type: READ / WRITE / ADMIN
    - name: человекочитаемое название права
    - category: метка категории для административного справочника
    Сам по себе ни к какому ресурсу не относится до привязки через `ResourceAccess`.
    """

    __tablename__ = "accesses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), index=True)

    @property
    def subject(self) -> Subject:
        if self.user_type == SubjectType.USER.value:
            return UserSubject(self.source)
        if self.user_type == SubjectType.GROUP.value:
            return GroupSubject(self.source)
        raise ValueError(f"unknown access user_type: {self.user_type!r}")


class ResourceAccess(Base):
    """
    Связь ресурс→доступ (грант становится действующим на ресурсе).
    Уникальность (resource_id, access_id) предотвращает дублирование.
    """

    __tablename__ = "resource_accesses"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    resource_id: Mapped[str] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    access_id: Mapped[str] = mapped_column(
        ForeignKey("accesses.id", ondelete="CASCADE"), nullable=False, index=True
    )

    resource: Mapped[Resource] = relationship("Resource", back_populates="accesses")
    access: Mapped[Access] = relationship("Access")

    __table_args__ = (
        UniqueConstraint("resource_id", "access_id", name="uq_resource_access"),
    )
