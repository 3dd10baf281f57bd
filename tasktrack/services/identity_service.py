from __future__ import annotations

import re
from datetime import datetime, timedelta

import structlog
from sqlmodel import Session, col, select

from tasktrack.domain.errors import (
    AuthError,
    ConflictError,
    ErrorCode,
    PermissionDeniedError,
    ValidationError,
)
from tasktrack.domain.models import (
    Company,
    Department,
    DepartmentManager,
    LoginRequest,
    Principal,
    RegisterRequest,
    Role,
    SubscriptionStatus,
    User,
    as_utc,
    now_utc,
)
from tasktrack.domain.task_rules import normalize_phone
from tasktrack.infra.auth import (
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    hash_one_time_token,
    hash_password,
    new_one_time_token,
    verify_password,
)
from tasktrack.infra.db import get_engine
from tasktrack.infra.events import event_bus
from tasktrack.infra.unit_of_work import UnitOfWork
from tasktrack.services import mailer
from tasktrack.services.mailer import TokenPurpose

EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
VERIFICATION_TOKEN_TTL = timedelta(hours=24)
EMAIL_CHANGE_TOKEN_TTL = timedelta(hours=24)
RESET_PASSWORD_TOKEN_TTL = timedelta(minutes=15)

logger = structlog.get_logger(__name__)


def capitalize_words(value: str) -> str:
    return re.sub(r"\b\w", lambda match: match.group(0).upper(), value.strip())


def ensure_account_usable(
    user: User, company: Company | None, department: Department | None
) -> tuple[Company, Department]:
    """Account and tenant activation cascade; the first failing check wins."""
    if not user.is_verified:
        raise AuthError(ErrorCode.ACCOUNT_NOT_VERIFIED, "User account is not verified")
    if not user.is_active:
        raise AuthError(ErrorCode.USER_DEACTIVATED, "User account is deactivated")
    if company is None or not company.is_active:
        raise AuthError(ErrorCode.TENANT_DEACTIVATED, "Company account is deactivated")
    if company.subscription_status != SubscriptionStatus.ACTIVE:
        raise PermissionDeniedError(ErrorCode.SUBSCRIPTION_INACTIVE, "Company subscription is not active")
    if department is None or not department.is_active:
        raise AuthError(ErrorCode.DEPARTMENT_DEACTIVATED, "Department is deactivated")
    return company, department


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _managed_department_ids(self, session: Session, user: User) -> frozenset[str]:
        rows = session.exec(
            select(DepartmentManager.department_id)
            .join(Department, col(Department.id) == col(DepartmentManager.department_id))
            .where(DepartmentManager.user_id == user.id)
            .where(Department.company_id == user.company_id)
        ).all()
        return frozenset(rows)

    def _load_principal(self, session: Session, user: User) -> Principal:
        company = session.get(Company, user.company_id)
        department = session.get(Department, user.department_id)
        usable_company, usable_department = ensure_account_usable(user, company, department)
        return Principal(
            user=user,
            company=usable_company,
            department=usable_department,
            managed_department_ids=self._managed_department_ids(session, user),
        )

    def resolve_principal(self, user_id: str) -> Principal:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise AuthError(ErrorCode.SUBJECT_NOT_FOUND, "User not found")
            return self._load_principal(session, user)

    def authenticate_access_token(self, token: str | None) -> Principal:
        if not token:
            raise AuthError(ErrorCode.MISSING_CREDENTIAL, "Access token is required")
        claims = decode_access_token(token)
        return self.resolve_principal(str(claims["sub"]))

    def refresh_session(self, refresh_token: str | None) -> tuple[Principal, str]:
        if not refresh_token:
            raise AuthError(ErrorCode.MISSING_CREDENTIAL, "Refresh token is required")
        claims = decode_refresh_token(refresh_token)
        principal = self.resolve_principal(str(claims["sub"]))
        return principal, create_access_token(principal.user_id)

    def register_tenant(self, payload: RegisterRequest) -> Principal:
        company_in = payload.company
        admin_in = payload.admin
        company_phone = normalize_phone(company_in.phone)
        company_name = capitalize_words(company_in.name.lower())
        company_email = company_in.email.lower()
        admin_email = admin_in.email.lower()
        raw_token, token_hash = new_one_time_token()
        token_expires_at = now_utc() + VERIFICATION_TOKEN_TTL

        with UnitOfWork() as uow:
            session = uow.session
            duplicate = session.exec(
                select(Company).where(
                    (col(Company.name) == company_name)
                    | (col(Company.email) == company_email)
                    | (col(Company.phone) == company_phone)
                )
            ).first()
            if duplicate is not None:
                raise ConflictError(ErrorCode.COMPANY_EXISTS, "Company name, email or phone already registered")
            if session.exec(select(User).where(User.email == admin_email)).first() is not None:
                raise ConflictError(ErrorCode.EMAIL_EXISTS, "Email already in use")

            company = Company(
                name=company_name,
                email=company_email,
                phone=company_phone,
                address=capitalize_words(company_in.address.lower()),
                size=company_in.size,
                industry=company_in.industry,
            )
            session.add(company)
            session.flush()

            department = Department(company_id=company.id, name=capitalize_words(admin_in.department_name))
            session.add(department)
            session.flush()

            admin = User(
                company_id=company.id,
                department_id=department.id,
                first_name=capitalize_words(admin_in.first_name),
                last_name=capitalize_words(admin_in.last_name),
                position=capitalize_words(admin_in.position) if admin_in.position else None,
                email=admin_email,
                password_hash=hash_password(admin_in.password),
                role=Role.SUPER_ADMIN,
                verification_token_hash=token_hash,
                verification_token_expires_at=token_expires_at,
            )
            session.add(admin)
            session.flush()
            session.add(DepartmentManager(department_id=department.id, user_id=admin.id))

            event = event_bus.build(
                "company.registered",
                company.id,
                {"company_id": company.id, "department_id": department.id, "admin_id": admin.id},
                actor_id=admin.id,
            )
            event_bus.record(event, session)
            uow.commit()

        event_bus.notify(event)
        mailer.get_mailer().send_token(
            purpose=TokenPurpose.VERIFY_EMAIL,
            email=admin.email,
            token=raw_token,
            expires_at=token_expires_at,
        )
        return Principal(
            user=admin,
            company=company,
            department=department,
            managed_department_ids=frozenset({department.id}),
        )

    def login(self, payload: LoginRequest) -> tuple[Principal, str, str]:
        if not payload.email or not payload.password:
            raise ValidationError(ErrorCode.MISSING_CREDENTIALS, "Email and password are required")
        email = payload.email.strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError(ErrorCode.VALIDATION_ERROR, "Invalid email format")

        with UnitOfWork() as uow:
            session = uow.session
            user = session.exec(select(User).where(User.email == email)).first()
            if user is None or not verify_password(payload.password, user.password_hash):
                raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid email or password")
            principal = self._load_principal(session, user)
            user.last_login_at = now_utc()
            session.add(user)
            uow.commit()

        return principal, create_access_token(user.id), create_refresh_token(user.id)

    def _find_by_token(self, session: Session, column: object, token: str) -> User | None:
        return session.exec(select(User).where(column == hash_one_time_token(token))).first()

    def verify_email(self, token: str) -> User:
        with UnitOfWork() as uow:
            session = uow.session
            user = self._find_by_token(session, col(User.verification_token_hash), token)
            expires_at = user.verification_token_expires_at if user is not None else None
            if user is None or expires_at is None or as_utc(expires_at) < now_utc():
                raise ValidationError(ErrorCode.TOKEN_INVALID_OR_EXPIRED, "Verification token is invalid or expired")
            user.is_verified = True
            user.verification_token_hash = None
            user.verification_token_expires_at = None
            user.updated_at = now_utc()
            session.add(user)
            uow.commit()
        return user

    def issue_verification_token(self, session: Session, user: User) -> tuple[str, datetime]:
        raw_token, token_hash = new_one_time_token()
        expires_at = now_utc() + VERIFICATION_TOKEN_TTL
        user.verification_token_hash = token_hash
        user.verification_token_expires_at = expires_at
        session.add(user)
        return raw_token, expires_at

    def request_password_reset(self, email: str) -> None:
        # Same outcome whether or not the address exists.
        normalized = email.strip().lower()
        with UnitOfWork() as uow:
            session = uow.session
            user = session.exec(select(User).where(User.email == normalized)).first()
            if user is None or not user.is_active:
                return
            raw_token, token_hash = new_one_time_token()
            user.reset_password_token_hash = token_hash
            user.reset_password_expires_at = now_utc() + RESET_PASSWORD_TOKEN_TTL
            session.add(user)
            uow.commit()
        mailer.get_mailer().send_token(
            purpose=TokenPurpose.RESET_PASSWORD,
            email=user.email,
            token=raw_token,
            expires_at=user.reset_password_expires_at,
        )

    def reset_password(self, token: str, new_password: str) -> None:
        with UnitOfWork() as uow:
            session = uow.session
            user = self._find_by_token(session, col(User.reset_password_token_hash), token)
            expires_at = user.reset_password_expires_at if user is not None else None
            if user is None or expires_at is None or as_utc(expires_at) < now_utc():
                raise ValidationError(ErrorCode.TOKEN_INVALID_OR_EXPIRED, "Reset token is invalid or expired")
            user.password_hash = hash_password(new_password)
            user.reset_password_token_hash = None
            user.reset_password_expires_at = None
            user.updated_at = now_utc()
            session.add(user)
            uow.commit()

    def request_email_change(self, principal: Principal, new_email: str) -> None:
        normalized = new_email.strip().lower()
        with UnitOfWork() as uow:
            session = uow.session
            if session.exec(select(User).where(User.email == normalized)).first() is not None:
                raise ConflictError(ErrorCode.EMAIL_EXISTS, "Email already in use")
            user = session.get(User, principal.user_id)
            if user is None:
                raise AuthError(ErrorCode.SUBJECT_NOT_FOUND, "User not found")
            raw_token, token_hash = new_one_time_token()
            user.pending_email = normalized
            user.email_change_token_hash = token_hash
            user.email_change_token_expires_at = now_utc() + EMAIL_CHANGE_TOKEN_TTL
            session.add(user)
            uow.commit()
        mailer.get_mailer().send_token(
            purpose=TokenPurpose.CHANGE_EMAIL,
            email=normalized,
            token=raw_token,
            expires_at=user.email_change_token_expires_at,
        )

    def confirm_email_change(self, token: str) -> User:
        with UnitOfWork() as uow:
            session = uow.session
            user = self._find_by_token(session, col(User.email_change_token_hash), token)
            expires_at = user.email_change_token_expires_at if user is not None else None
            if user is None or expires_at is None or as_utc(expires_at) < now_utc() or not user.pending_email:
                raise ValidationError(ErrorCode.TOKEN_INVALID_OR_EXPIRED, "Email change token is invalid or expired")
            taken = session.exec(
                select(User).where(User.email == user.pending_email).where(User.id != user.id)
            ).first()
            if taken is not None:
                raise ConflictError(ErrorCode.EMAIL_EXISTS, "Email already in use")
            user.email = user.pending_email
            user.pending_email = None
            user.email_change_token_hash = None
            user.email_change_token_expires_at = None
            user.updated_at = now_utc()
            session.add(user)
            uow.commit()
        logger.info("email_changed", user_id=user.id)
        return user
