"""Create (or promote) an API user.

Usage: python -m mailflow.scripts.create_user <username> <email> <password> [--admin]
"""
import argparse
import asyncio

from sqlalchemy.future import select

from mailflow.database import AsyncSessionLocal, create_all
from mailflow.models.user import User
from mailflow.utils.security import get_password_hash


async def create_user(username: str, email: str, password: str, is_admin: bool = False) -> User:
    await create_all()
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(User).filter(User.username == username))
        user = result.scalars().first()
        if user:
            user.hashed_password = get_password_hash(password)
            user.is_admin = is_admin or user.is_admin
            print(f"Updated existing user '{username}' (admin={user.is_admin})")
        else:
            user = User(
                username=username,
                email=email,
                hashed_password=get_password_hash(password),
                is_admin=is_admin,
            )
            db.add(user)
            print(f"Created user '{username}' (admin={is_admin})")
        await db.commit()
        return user


def main():
    parser = argparse.ArgumentParser(description="Create a mailflow API user")
    parser.add_argument("username")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--admin", action="store_true", help="allow managing templates")
    args = parser.parse_args()
    asyncio.run(create_user(args.username, args.email, args.password, args.admin))


if __name__ == "__main__":
    main()
