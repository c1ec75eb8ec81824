import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Field, Session, SQLModel, create_engine, delete, select

from .config import settings

ROLE_NAMES = ("ROLE_USER", "ROLE_MODERATOR", "ROLE_ADMIN")

engine: Engine | None = None


class Conflict(ValueError):
    pass


class NotFound(LookupError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _db_path() -> Path:
    path = Path(settings.DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def refresh_engine() -> None:
    global engine
    if engine is not None:
        engine.dispose()
    db_path = _db_path()
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def _get_engine() -> Engine:
    global engine
    desired = str(_db_path())
    if engine is None or engine.url.database != desired:
        refresh_engine()
    assert engine is not None
    return engine


def _tz_column(**kw) -> Column:
    return Column(DateTime(timezone=True), **kw)


class Department(SQLModel, table=True):
    __tablename__ = "department"

    id: str = Field(sa_column=Column(String(4), primary_key=True))
    dept_name: str = Field(sa_column=Column(String(40), nullable=False, unique=True))
    active: bool = Field(default=True)
    created_by: Optional[int] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None, sa_column=_tz_column())
    updated_by: Optional[int] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None, sa_column=_tz_column())
    deleted_by: Optional[int] = Field(default=None)
    deleted_at: Optional[datetime] = Field(default=None, sa_column=_tz_column(index=True))


class Role(SQLModel, table=True):
    __tablename__ = "roles"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(20), nullable=False, unique=True))


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"

    user_id: int = Field(foreign_key="users.id", primary_key=True)
    role_id: int = Field(foreign_key="roles.id", primary_key=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(sa_column=Column(String(20), nullable=False, unique=True))
    password: str = Field(sa_column=Column(String(150), nullable=False))
    email: str = Field(sa_column=Column(String(100), nullable=False, unique=True))
    firstname: str = Field(sa_column=Column(String(20), nullable=False))
    lastname: Optional[str] = Field(default=None, sa_column=Column(String(20)))
    is_enabled: bool = Field(default=True)
    is_account_non_expired: bool = Field(default=True)
    is_account_non_locked: bool = Field(default=True)
    is_credentials_non_expired: bool = Field(default=True)
    is_deleted: bool = Field(default=False)
    account_expiration_date: Optional[datetime] = Field(default=None, sa_column=_tz_column())
    credentials_expiration_date: Optional[datetime] = Field(default=None, sa_column=_tz_column())
    user_type: str = Field(default="USER_ACCOUNT")
    last_login: Optional[datetime] = Field(default=None, sa_column=_tz_column())
    created_by: Optional[int] = Field(default=None)
    created_at: Optional[datetime] = Field(default=None, sa_column=_tz_column())
    updated_by: Optional[int] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None, sa_column=_tz_column())


class RefreshToken(SQLModel, table=True):
    __tablename__ = "refresh_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", unique=True)
    token: str = Field(sa_column=Column(String(36), nullable=False, unique=True))
    expiry_date: datetime = Field(sa_column=_tz_column(nullable=False))


def init_db() -> None:
    eng = _get_engine()
    SQLModel.metadata.create_all(eng)
    with Session(eng) as session:
        existing = set(session.exec(select(Role.name)))
        for name in ROLE_NAMES:
            if name not in existing:
                session.add(Role(name=name))
        session.commit()


# departments


def _live_departments():
    return select(Department).where(Department.deleted_at.is_(None))


def list_departments() -> list[Department]:
    with Session(_get_engine()) as session:
        return list(session.exec(_live_departments().order_by(Department.id)))


def get_department(dept_id: str) -> Department | None:
    with Session(_get_engine()) as session:
        stmt = _live_departments().where(func.lower(Department.id) == dept_id.lower())
        return session.exec(stmt).first()


def _name_taken(session: Session, name: str, exclude_id: str | None = None) -> bool:
    stmt = select(Department).where(func.lower(Department.dept_name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Department.id != exclude_id)
    return session.exec(stmt).first() is not None


def _department_clash(session: Session, dept_id: str, dept_name: str) -> Conflict | None:
    taken = session.exec(
        select(Department).where(func.lower(Department.id) == dept_id.lower())
    ).first()
    if taken is not None:
        return Conflict("department with the same ID already exists")
    if _name_taken(session, dept_name):
        return Conflict("department with the same name already exists")
    return None


def create_department(dept_id: str, dept_name: str, active: bool, actor: int | None) -> Department:
    with Session(_get_engine()) as session:
        clash = _department_clash(session, dept_id, dept_name)
        if clash is not None:
            raise clash
        now = utcnow()
        dept = Department(
            id=dept_id,
            dept_name=dept_name,
            active=active,
            created_by=actor,
            created_at=now,
            updated_by=actor,
            updated_at=now,
        )
        session.add(dept)
        try:
            session.commit()
        except IntegrityError as exc:
            # a concurrent insert won the race between the check and the commit
            session.rollback()
            clash = _department_clash(session, dept_id, dept_name)
            raise clash or Conflict("department with the same ID already exists") from exc
        session.refresh(dept)
        return dept


def update_department(dept_id: str, dept_name: str, active: bool, actor: int | None) -> Department:
    with Session(_get_engine()) as session:
        dept = session.exec(
            _live_departments().where(func.lower(Department.id) == dept_id.lower())
        ).first()
        if dept is None:
            raise NotFound("department not found")
        if _name_taken(session, dept_name, exclude_id=dept.id):
            raise Conflict("department with the same name already exists")
        dept.dept_name = dept_name
        dept.active = active
        dept.updated_by = actor
        dept.updated_at = utcnow()
        session.add(dept)
        session.commit()
        session.refresh(dept)
        return dept


def delete_department(dept_id: str, actor: int | None) -> bool:
    with Session(_get_engine()) as session:
        dept = session.exec(
            _live_departments().where(func.lower(Department.id) == dept_id.lower())
        ).first()
        if dept is None:
            return False
        dept.deleted_by = actor
        dept.deleted_at = utcnow()
        session.add(dept)
        session.commit()
        return True


# users and roles


def _role_names(session: Session, user_id: int) -> list[str]:
    stmt = (
        select(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id)
        .order_by(Role.id)
    )
    return list(session.exec(stmt))


def user_roles(user_id: int) -> list[str]:
    with Session(_get_engine()) as session:
        return _role_names(session, user_id)


def list_users() -> list[tuple[User, list[str]]]:
    with Session(_get_engine()) as session:
        users = session.exec(
            select(User).where(User.is_deleted == False).order_by(User.id)  # noqa: E712
        ).all()
        return [(u, _role_names(session, u.id)) for u in users]


def get_user(user_id: int) -> tuple[User, list[str]] | None:
    with Session(_get_engine()) as session:
        user = session.get(User, user_id)
        if user is None or user.is_deleted:
            return None
        return user, _role_names(session, user.id)


def get_user_by_username(username: str) -> User | None:
    with Session(_get_engine()) as session:
        return session.exec(select(User).where(User.username == username)).first()


def _user_clash(session: Session, username: str, email: str) -> Conflict | None:
    if session.exec(select(User).where(User.username == username)).first():
        return Conflict("user with the same username already exists")
    if session.exec(select(User).where(User.email == email)).first():
        return Conflict("user with the same email already exists")
    return None


def create_user(user: User, roles: list[str], actor: int | None) -> tuple[User, list[str]]:
    username, email = user.username, user.email
    with Session(_get_engine()) as session:
        clash = _user_clash(session, username, email)
        if clash is not None:
            raise clash
        found = {r.name: r for r in session.exec(select(Role).where(Role.name.in_(roles)))}
        missing = [name for name in roles if name not in found]
        if missing:
            raise NotFound(f"unknown roles: {', '.join(missing)}")
        now = utcnow()
        user.created_by = actor
        user.updated_by = actor
        user.created_at = now
        user.updated_at = now
        try:
            session.add(user)
            session.flush()
            for name in dict.fromkeys(roles):
                session.add(UserRole(user_id=user.id, role_id=found[name].id))
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            clash = _user_clash(session, username, email)
            raise clash or Conflict("user with the same username already exists") from exc
        session.refresh(user)
        return user, _role_names(session, user.id)


def update_last_login(user_id: int, when: datetime) -> None:
    with Session(_get_engine()) as session:
        user = session.get(User, user_id)
        if user is None:
            return
        user.last_login = when
        session.add(user)
        session.commit()


# refresh tokens


def rotate_refresh_token(user_id: int, ttl_hours: int) -> RefreshToken:
    """Replace any refresh token the user holds with a fresh one."""

    with Session(_get_engine()) as session:
        session.exec(delete(RefreshToken).where(RefreshToken.user_id == user_id))
        token = RefreshToken(
            user_id=user_id,
            token=str(uuid.uuid4()),
            expiry_date=utcnow() + timedelta(hours=ttl_hours),
        )
        session.add(token)
        session.commit()
        session.refresh(token)
        return token


def get_refresh_token(token: str) -> RefreshToken | None:
    with Session(_get_engine()) as session:
        return session.exec(select(RefreshToken).where(RefreshToken.token == token)).first()
