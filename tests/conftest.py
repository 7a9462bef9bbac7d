import pytest

from database import MemoryDocumentStore
from schemas import Collections
from services import Services
from store import SwapskillStore

TECH = {"id": "tech", "name": "Technology"}
MUSIC = {"id": "music", "name": "Music"}


def skill_data(name="Python", category=TECH, **fields):
    return {"name": name, "category": category, "level": "intermediate", **fields}


@pytest.fixture
def db():
    return MemoryDocumentStore()


@pytest.fixture
def services(db):
    return Services(db)


@pytest.fixture
def store(services):
    return SwapskillStore(services)


@pytest.fixture
def make_user(db):
    """Write a user profile document straight into the store"""
    async def make(user_id, **fields):
        doc = {
            "email": f"{user_id}@example.com",
            "display_name": user_id.title(),
            "name": user_id.title(),
            "role": "user",
            "skills_offered": [],
            "skills_wanted": [],
            "rating": 0,
            "review_count": 0,
            "total_swaps": 0,
            "is_verified": False,
            "is_banned": False,
            "created_at": db.now(),
        }
        doc.update(fields)
        await db.set(Collections.USERS, user_id, doc)
        return user_id
    return make
