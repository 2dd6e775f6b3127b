"""
Test infrastructure for the CMS API.

Strategy
--------
- SQLite in-memory via aiosqlite; StaticPool keeps every session on the
  single connection that owns the in-memory database.  Foreign keys are
  switched on per connection so ``ON DELETE`` rules behave as in Postgres.
- The engine is built per test inside the test's event loop and the
  app's ``get_db`` dependency is pointed at it.
- Redis is replaced by ``InMemoryRedis`` so the cache, the permission
  version counter and invalidation are exercised for real.
- Roles and permissions are seeded before every test; ``make_user``
  creates users with a role and ``auth_headers`` issues a bearer token
  without going through the (slow) password login.
- Outgoing mail is captured in ``mail_outbox`` instead of hitting SMTP.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cms import mailer
from cms.cache import cache
from cms.config import settings
from cms.database import Base, get_db, run_hooks
from cms.enums import ArticleStatus, TokenAbility, UserRole
from cms.main import app
from cms.middleware import install_query_counter
from cms.models import Article, ArticleAuthor, PersonalAccessToken, Role, User, user_roles
from cms.permissions import seed_roles_and_permissions
from cms.security import generate_token, hash_password, hash_token
from cms.utils import slugify, utcnow
from tests.fakes import InMemoryRedis

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
DEFAULT_PASSWORD = "password123"

# Hashing is deliberately slow; do it once for every fixture user.
_DEFAULT_PASSWORD_HASH = hash_password(DEFAULT_PASSWORD)


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine_test():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    install_query_counter(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine_test):
    return async_sessionmaker(engine_test, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_app(session_factory):
    """Fresh cache, seeded roles and a ``get_db`` override for every test."""
    cache._redis = InMemoryRedis()

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                await run_hooks(session, committed=False)
                raise
            await run_hooks(session, committed=True)

    app.dependency_overrides[get_db] = override_get_db

    async with session_factory() as session:
        await seed_roles_and_permissions(session)
        await session.commit()

    yield
    app.dependency_overrides.pop(get_db, None)
    cache._redis = None


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """A live session for seeding and asserting ORM state directly."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def async_client() -> AsyncClient:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(autouse=True)
def mail_outbox(monkeypatch):
    """Capture every message handed to the mailer."""
    sent: list[dict] = []

    def fake_send_email(subject, to_email, html_body, text_body=None):
        sent.append({"subject": subject, "to": to_email, "html": html_body, "text": text_body})
        return True

    monkeypatch.setattr(mailer, "send_email", fake_send_email)
    return sent


@pytest.fixture
def media_root(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "MEDIA_ROOT", str(tmp_path))
    return tmp_path


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def make_user(session_factory):
    """
    Create a user holding *role* (a ``UserRole`` or role name, None for
    no role).  Extra keyword arguments are set on the model.
    """
    counter = {"n": 0}

    async def _make(role: UserRole | str | None = UserRole.SUBSCRIBER, **fields) -> User:
        counter["n"] += 1
        fields.setdefault("name", f"User {counter['n']}")
        fields.setdefault("email", f"user{counter['n']}@example.com")
        fields.setdefault("password", _DEFAULT_PASSWORD_HASH)
        async with session_factory() as session:
            user = User(**fields)
            session.add(user)
            await session.flush()
            if role is not None:
                name = role.value if isinstance(role, UserRole) else role
                role_id = (await session.execute(select(Role.id).where(Role.name == name))).scalar_one()
                await session.execute(insert(user_roles).values(user_id=user.id, role_id=role_id))
            await session.commit()
            return user

    return _make


@pytest_asyncio.fixture
async def auth_headers(session_factory):
    """Issue an access token for *user* and return the Authorization header."""

    async def _headers(user: User) -> dict[str, str]:
        plain = generate_token(64)
        async with session_factory() as session:
            session.add(
                PersonalAccessToken(
                    user_id=user.id,
                    name="access_token",
                    token_hash=hash_token(plain),
                    abilities=[TokenAbility.ACCESS_API.value],
                    expires_at=utcnow() + timedelta(minutes=15),
                )
            )
            await session.commit()
        return {"Authorization": f"Bearer {plain}"}

    return _headers


@pytest_asyncio.fixture
async def make_article(session_factory):
    """Insert an article directly; published and live by default."""

    async def _make(author: User, title: str = "Hello World", **fields) -> Article:
        status = fields.pop("status", ArticleStatus.PUBLISHED)
        fields.setdefault("slug", slugify(title))
        fields.setdefault("content_markdown", f"Body of {title}")
        if status == ArticleStatus.PUBLISHED:
            fields.setdefault("published_at", utcnow() - timedelta(hours=1))
        async with session_factory() as session:
            article = Article(title=title, status=status, created_by=author.id, **fields)
            session.add(article)
            await session.flush()
            session.add(ArticleAuthor(article_id=article.id, user_id=author.id))
            await session.commit()
            return article

    return _make


@pytest_asyncio.fixture
async def admin(make_user) -> User:
    return await make_user(UserRole.ADMINISTRATOR, name="Admin", email="admin@example.com")


@pytest_asyncio.fixture
async def admin_headers(admin, auth_headers) -> dict[str, str]:
    return await auth_headers(admin)
