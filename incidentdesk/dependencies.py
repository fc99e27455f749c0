"""FastAPI dependency injection providers."""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .auth.session import SessionContext
from .config import IncidentDeskConfig, get_config
from .database import get_session_factory
from .errors import NotFoundError
from .utils.logging import get_logger
from .utils.security import read_identity_claims

_dep_logger = get_logger("dependencies")

security_scheme = HTTPBearer(auto_error=False)

_config_instance: IncidentDeskConfig | None = None
_live_gateway = None
_incident_store = None
_user_directory = None
_notification_dispatcher = None
_message_threads = None
_lifecycle_engine = None
_assignment_resolver = None
_category_catalog = None
_analytics_service = None
_live_views = None


def get_app_config() -> IncidentDeskConfig:
    """Get the application config singleton."""
    global _config_instance
    if _config_instance is None:
        _config_instance = get_config()
    return _config_instance


def decode_identity(token: Optional[str]) -> dict:
    """Validate a bearer JWT and return its claims, or raise 401."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    config = get_app_config()
    payload = read_identity_claims(token, config.secret_key, config.jwt_algorithm)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def resolve_session(token: Optional[str]) -> SessionContext:
    """Turn a bearer token into a SessionContext, or raise 401."""
    payload = decode_identity(token)
    try:
        user = await get_user_directory().get(payload["sub"])
    except NotFoundError:
        _dep_logger.warning("token_for_unknown_user", sub=payload["sub"])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No profile registered for this identity",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    return SessionContext.from_user(user)


async def get_session_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> SessionContext:
    """Validate the bearer JWT and build the caller's SessionContext."""
    return await resolve_session(credentials.credentials if credentials else None)


async def get_token_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> dict:
    """Token claims for callers that may not have a profile yet."""
    return decode_identity(credentials.credentials if credentials else None)


def get_live_gateway():
    """Get the Live Query Gateway singleton."""
    global _live_gateway
    if _live_gateway is None:
        from .live.gateway import LiveQueryGateway
        config = get_app_config()
        _live_gateway = LiveQueryGateway(
            queue_size=config.live_queue_size,
            fetch_timeout=config.operation_timeout_seconds,
        )
    return _live_gateway


def get_incident_store():
    """Get the Incident Store singleton."""
    global _incident_store
    if _incident_store is None:
        from .engine.incident_store import IncidentStore
        config = get_app_config()
        _incident_store = IncidentStore(
            get_session_factory(config),
            live=get_live_gateway(),
            operation_timeout=config.operation_timeout_seconds,
            max_cas_retries=config.store_max_cas_retries,
        )
    return _incident_store


def get_user_directory():
    """Get the User Directory singleton."""
    global _user_directory
    if _user_directory is None:
        from .engine.user_directory import UserDirectory
        config = get_app_config()
        _user_directory = UserDirectory(
            get_session_factory(config),
            live=get_live_gateway(),
            operation_timeout=config.operation_timeout_seconds,
        )
    return _user_directory


def get_notification_dispatcher():
    """Get the Notification Dispatcher singleton."""
    global _notification_dispatcher
    if _notification_dispatcher is None:
        from .notifications.dispatcher import NotificationDispatcher
        config = get_app_config()
        _notification_dispatcher = NotificationDispatcher(
            get_session_factory(config),
            users=get_user_directory(),
            live=get_live_gateway(),
            feed_limit=config.notification_feed_limit,
            operation_timeout=config.operation_timeout_seconds,
        )
    return _notification_dispatcher


def get_message_threads():
    """Get the Message Threads singleton."""
    global _message_threads
    if _message_threads is None:
        from .engine.messages import MessageThreads
        config = get_app_config()
        _message_threads = MessageThreads(
            get_session_factory(config),
            get_incident_store(),
            live=get_live_gateway(),
            operation_timeout=config.operation_timeout_seconds,
        )
    return _message_threads


def get_lifecycle_engine():
    """Get the Lifecycle Engine singleton."""
    global _lifecycle_engine
    if _lifecycle_engine is None:
        from .engine.lifecycle import LifecycleEngine
        _lifecycle_engine = LifecycleEngine(
            get_incident_store(),
            get_user_directory(),
            dispatcher=get_notification_dispatcher(),
            messages=get_message_threads(),
        )
    return _lifecycle_engine


def get_assignment_resolver():
    """Get the Assignment Resolver singleton."""
    global _assignment_resolver
    if _assignment_resolver is None:
        from .engine.assignment import AssignmentResolver
        _assignment_resolver = AssignmentResolver(
            get_incident_store(),
            get_user_directory(),
            dispatcher=get_notification_dispatcher(),
            messages=get_message_threads(),
        )
    return _assignment_resolver


def get_category_catalog():
    """Get the Category Catalog singleton."""
    global _category_catalog
    if _category_catalog is None:
        from .engine.categories import CategoryCatalog
        config = get_app_config()
        _category_catalog = CategoryCatalog(
            get_session_factory(config),
            live=get_live_gateway(),
            operation_timeout=config.operation_timeout_seconds,
            max_cas_retries=config.store_max_cas_retries,
        )
    return _category_catalog


def get_analytics_service():
    """Get the Analytics singleton."""
    global _analytics_service
    if _analytics_service is None:
        from .engine.analytics import AnalyticsService
        _analytics_service = AnalyticsService(get_incident_store(), categories=get_category_catalog())
    return _analytics_service


def get_live_views():
    """Get the typed live query helpers."""
    global _live_views
    if _live_views is None:
        from .live.views import LiveViews
        _live_views = LiveViews(
            get_live_gateway(),
            get_incident_store(),
            users=get_user_directory(),
            dispatcher=get_notification_dispatcher(),
            messages=get_message_threads(),
            categories=get_category_catalog(),
        )
    return _live_views


def reset_singletons() -> None:
    """Drop every cached service. Called on shutdown and between tests."""
    global _config_instance, _live_gateway, _incident_store, _user_directory
    global _notification_dispatcher, _message_threads, _lifecycle_engine
    global _assignment_resolver, _category_catalog, _analytics_service, _live_views
    _config_instance = None
    _live_gateway = None
    _incident_store = None
    _user_directory = None
    _notification_dispatcher = None
    _message_threads = None
    _lifecycle_engine = None
    _assignment_resolver = None
    _category_catalog = None
    _analytics_service = None
    _live_views = None
