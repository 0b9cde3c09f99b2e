from typing import Optional


class ConsoleError(Exception):
    """Базовое исключение доменного ядра консоли доступа."""

    message = "Ошибка консоли доступа"

    def __init__(self, message: Optional[str] = None, **context):
        self.context = context
        super().__init__(message or self.message)


class NotFoundError(ConsoleError):
    """Запрошенная сущность (по идентификатору) не существует."""

    message = "Объект не найден"


class PrincipalNotFound(NotFoundError):
    message = "Пользователь не найден"


class GroupNotFound(NotFoundError):
    message = "Группа не найдена"


class ServiceNotFound(NotFoundError):
    message = "Сервис не найден"


class ResourceNotFound(NotFoundError):
    message = "Ресурс не найден"


class AccessNotFound(NotFoundError):
    message = "Доступ не найден"


class ValidationFailure(ConsoleError):
    """Нарушение бизнес-правила; операция не оставляет побочных эффектов."""

    message = "Неверные параметры запроса"


class DuplicateEdge(ValidationFailure):
    message = "Связь уже существует"


class DuplicateMembership(DuplicateEdge):
    message = "Пользователь уже состоит в группе"


class DuplicateRelation(DuplicateEdge):
    message = "Группа уже вложена в эту группу"


class SelfRelation(ValidationFailure):
    message = "Группа не может быть вложена сама в себя"


class CycleDetected(ValidationFailure):
    message = "Добавление связи создаст цикл групп"


class DuplicateValue(ValidationFailure):
    """Нарушена уникальность (логин, email, имя сервиса)."""

    message = "Значение уже используется"
