"""Database seeder: roles, permissions, an administrator and demo content."""
import argparse
import asyncio
import random
import time
from datetime import timedelta

from sqlalchemy import insert, select

from cms.cache import cache
from cms.database import Base, async_session, engine
from cms.enums import ArticleAuthorRole, ArticleStatus, CommentStatus, UserRole
from cms.models import (
    Article,
    ArticleAuthor,
    Category,
    Comment,
    Tag,
    User,
    article_categories,
    article_tags,
    user_roles,
)
from cms.permissions import seed_roles_and_permissions
from cms.security import hash_password
from cms.utils import slugify, utcnow

CATEGORIES = {
    "Technology": ["Programming", "DevOps", "Security"],
    "Lifestyle": ["Travel", "Food"],
    "Business": [],
}

TAGS = ["python", "fastapi", "postgresql", "redis", "docker", "kubernetes",
        "testing", "performance", "security", "rest-api"]

DEMO_ROLES = [UserRole.EDITOR, UserRole.AUTHOR, UserRole.CONTRIBUTOR, UserRole.SUBSCRIBER]


async def seed(admin_email: str, admin_password: str, demo: bool = True, reset: bool = False):
    start = time.perf_counter()
    await cache.connect()

    async with engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        roles = await seed_roles_and_permissions(session)
        print(f"  Roles: {', '.join(sorted(roles))}")

        admin = (await session.execute(select(User).where(User.email == admin_email))).scalar_one_or_none()
        if admin is None:
            admin = User(
                name="Administrator",
                email=admin_email,
                password=hash_password(admin_password),
                email_verified_at=utcnow(),
            )
            session.add(admin)
            await session.flush()
            await session.execute(
                insert(user_roles).values(user_id=admin.id, role_id=roles[UserRole.ADMINISTRATOR.value].id)
            )
            print(f"  Created administrator {admin_email}")
        else:
            print(f"  Administrator {admin_email} already exists")

        if demo and (await session.execute(select(Article.id).limit(1))).first() is None:
            await _seed_demo_content(session, roles, admin)

        await session.commit()

    await cache.disconnect()
    print(f"\nSeeding complete in {time.perf_counter() - start:.1f}s")


async def _seed_demo_content(session, roles, admin: User):
    users = [admin]
    for role in DEMO_ROLES:
        user = User(
            name=f"Demo {role.display_name}",
            email=f"{role.value}@example.com",
            password=hash_password("password"),
            email_verified_at=utcnow(),
        )
        session.add(user)
        await session.flush()
        await session.execute(insert(user_roles).values(user_id=user.id, role_id=roles[role.value].id))
        users.append(user)
    print(f"  Created {len(DEMO_ROLES)} demo users (password: 'password')")

    categories = []
    for parent_name, children in CATEGORIES.items():
        parent = Category(name=parent_name, slug=slugify(parent_name))
        session.add(parent)
        await session.flush()
        categories.append(parent)
        for child_name in children:
            child = Category(name=child_name, slug=slugify(child_name), parent_id=parent.id)
            session.add(child)
            categories.append(child)
    tags = [Tag(name=name, slug=slugify(name)) for name in TAGS]
    session.add_all(tags)
    await session.flush()
    print(f"  Created {len(categories)} categories and {len(tags)} tags")

    writers = users[:4]
    now = utcnow()
    for i in range(20):
        author = random.choice(writers)
        published = i % 5 != 0
        title = f"Article {i + 1}: notes on {random.choice(TAGS)}"
        article = Article(
            title=title,
            slug=slugify(title),
            excerpt=f"A short introduction to {random.choice(TAGS)}.",
            content_markdown=f"# {title}\n\n" + "Body paragraph. " * 30,
            status=ArticleStatus.PUBLISHED if published else ArticleStatus.DRAFT,
            published_at=now - timedelta(days=random.randint(1, 90)) if published else None,
            is_featured=i < 2,
            featured_at=now if i < 2 else None,
            created_by=author.id,
            approved_by=admin.id if published else None,
        )
        session.add(article)
        await session.flush()
        session.add(ArticleAuthor(article_id=article.id, user_id=author.id, role=ArticleAuthorRole.MAIN))
        await session.execute(
            insert(article_categories),
            [{"article_id": article.id, "category_id": c.id} for c in random.sample(categories, k=2)],
        )
        await session.execute(
            insert(article_tags),
            [{"article_id": article.id, "tag_id": t.id} for t in random.sample(tags, k=random.randint(1, 3))],
        )
        if published:
            for _ in range(random.randint(0, 3)):
                session.add(Comment(
                    article_id=article.id,
                    user_id=random.choice(users).id,
                    content="Thanks, this was helpful.",
                    status=CommentStatus.APPROVED,
                    approved_at=now,
                    approved_by=admin.id,
                ))
    await session.flush()
    print("  Created 20 demo articles with comments")


def main():
    parser = argparse.ArgumentParser(description="Seed the CMS database")
    parser.add_argument("--admin-email", default="admin@example.com")
    parser.add_argument("--admin-password", default="password")
    parser.add_argument("--no-demo", action="store_true", help="Only seed roles, permissions and the admin")
    parser.add_argument("--reset", action="store_true", help="Drop all tables first")
    args = parser.parse_args()
    asyncio.run(seed(args.admin_email, args.admin_password, demo=not args.no_demo, reset=args.reset))


if __name__ == "__main__":
    main()
