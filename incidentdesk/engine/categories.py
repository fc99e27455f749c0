"""Category catalog — incident categories and their subcategories."""

import asyncio
import json
import weakref
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from ..auth.rbac import PERM_MANAGE_CATEGORIES, check_permission
from ..auth.session import SessionContext
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.base import isoformat, new_id, utcnow
from ..models.category import Category
from ..utils.logging import get_logger
from ..utils.timeouts import with_timeout

logger = get_logger("engine.categories")

CATEGORY_PRIORITIES = ("Low", "Normal", "High", "Critical")
CATEGORY_STATUSES = ("Active", "Archived")
CATEGORY_FIELDS = ("name", "priority", "icon", "color", "status")

DEFAULT_CATEGORIES = [
    {
        "name": "Safety",
        "priority": "High",
        "icon": "security",
        "color": "red",
        "status": "Active",
        "subcategories": ["Slip, Trip & Fall", "Chemical Spill", "Fire Hazard"],
    },
    {
        "name": "IT Infrastructure",
        "priority": "Normal",
        "icon": "dns",
        "color": "blue",
        "status": "Active",
        "subcategories": ["Server Outage", "Network Issues", "Software Access"],
    },
    {
        "name": "Workplace",
        "priority": "Critical",
        "icon": "apartment",
        "color": "orange",
        "status": "Active",
        "subcategories": ["Lighting Issues", "Desk/Chair Repair", "Meeting Room Equipment"],
    },
    {
        "name": "Public Facilities",
        "priority": "Low",
        "icon": "public",
        "color": "gray",
        "status": "Archived",
        "subcategories": ["Restrooms", "Parking Lot", "Water Fountain"],
    },
]


def _subcategory(name: str) -> dict:
    return {"id": new_id(), "name": name, "active": True}


def _clean_name(name: Optional[str], field: str = "name") -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError(f"{field} is required", field=field)
    return name


class CategoryCatalog:
    """Admin-managed categories. Subcategories are addressed by stable id."""

    def __init__(
        self,
        db_session_factory,
        live=None,
        operation_timeout: float = 10.0,
        max_cas_retries: int = 5,
    ) -> None:
        self._session_factory = db_session_factory
        self._live = live
        self._timeout = operation_timeout
        self._max_retries = max_cas_retries
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, category_id: str) -> asyncio.Lock:
        lock = self._locks.get(category_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[category_id] = lock
        return lock

    async def _with_timeout(self, coro, operation: str):
        return await with_timeout(coro, self._timeout, operation)

    def _publish(self, category_id: str) -> None:
        if self._live is not None:
            self._live.publish("categories", category_id)

    async def list_categories(self, include_archived: bool = True) -> list[dict]:
        """Categories ordered by name."""
        async def _list() -> list[dict]:
            async with self._session_factory() as db:
                stmt = select(Category).order_by(Category.name)
                if not include_archived:
                    stmt = stmt.where(Category.status == "Active")
                result = await db.execute(stmt)
                return [self._to_dict(c) for c in result.scalars().all()]

        return await self._with_timeout(_list(), "list_categories")

    async def get(self, category_id: str) -> dict:
        async def _get() -> dict:
            async with self._session_factory() as db:
                return self._to_dict(await self._load(db, category_id))

        return await self._with_timeout(_get(), "get_category")

    async def add_category(self, data: dict, session: SessionContext) -> dict:
        check_permission(session, PERM_MANAGE_CATEGORIES, "manage categories")
        values = self._validate_fields(data)
        values["name"] = _clean_name(data.get("name"))
        subcategories = [_subcategory(_clean_name(n, "subcategory")) for n in data.get("subcategories") or []]
        return await self._insert(values, subcategories)

    async def update_category(self, category_id: str, changes: dict, session: SessionContext) -> dict:
        check_permission(session, PERM_MANAGE_CATEGORIES, "manage categories")
        if "subcategories" in changes:
            raise ValidationError(
                "Subcategories are edited through their own operations", field="subcategories"
            )
        values = self._validate_fields(changes)
        if "name" in changes:
            values["name"] = _clean_name(changes["name"])
        return await self._mutate(category_id, lambda subs: subs, values, "update_category")

    async def add_subcategory(self, category_id: str, name: str, session: SessionContext) -> dict:
        check_permission(session, PERM_MANAGE_CATEGORIES, "manage categories")
        name = _clean_name(name, "subcategory")

        def _add(subs: list[dict]) -> list[dict]:
            if any(s["name"].lower() == name.lower() for s in subs):
                raise ValidationError(f"Subcategory {name!r} already exists", field="subcategory")
            return subs + [_subcategory(name)]

        return await self._mutate(category_id, _add, {}, "add_subcategory")

    async def rename_subcategory(
        self, category_id: str, subcategory_id: str, name: str, session: SessionContext
    ) -> dict:
        check_permission(session, PERM_MANAGE_CATEGORIES, "manage categories")
        name = _clean_name(name, "subcategory")

        def _rename(subs: list[dict]) -> list[dict]:
            self._find_subcategory(subs, subcategory_id)
            return [{**s, "name": name} if s["id"] == subcategory_id else s for s in subs]

        return await self._mutate(category_id, _rename, {}, "rename_subcategory")

    async def delete_subcategory(self, category_id: str, subcategory_id: str, session: SessionContext) -> dict:
        check_permission(session, PERM_MANAGE_CATEGORIES, "manage categories")

        def _delete(subs: list[dict]) -> list[dict]:
            self._find_subcategory(subs, subcategory_id)
            return [s for s in subs if s["id"] != subcategory_id]

        return await self._mutate(category_id, _delete, {}, "delete_subcategory")

    async def seed_defaults(self) -> int:
        """Add missing default categories and missing default subcategories.

        Returns the number of categories created or extended. Running it
        again on a seeded catalog changes nothing.
        """
        existing = {c["name"]: c for c in await self.list_categories()}
        touched = 0
        for default in DEFAULT_CATEGORIES:
            match = existing.get(default["name"])
            if match is None:
                values = {k: v for k, v in default.items() if k != "subcategories"}
                await self._insert(values, [_subcategory(n) for n in default["subcategories"]])
                touched += 1
                continue

            present = {s["name"] for s in match["subcategories"]}
            missing = [n for n in default["subcategories"] if n not in present]
            if missing:
                await self._mutate(
                    match["id"],
                    lambda subs, missing=missing: subs + [
                        _subcategory(n) for n in missing if n not in {s["name"] for s in subs}
                    ],
                    {},
                    "seed_subcategories",
                )
                touched += 1
        if touched:
            logger.info("categories_seeded", touched=touched)
        return touched

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _insert(self, values: dict, subcategories: list[dict]) -> dict:
        now = utcnow()

        async def _create() -> dict:
            async with self._session_factory() as db:
                duplicate = (await db.execute(
                    select(Category.id).where(Category.name == values["name"])
                )).scalar_one_or_none()
                if duplicate is not None:
                    raise ValidationError(f"Category {values['name']!r} already exists", field="name")
                category = Category(
                    id=new_id(),
                    subcategories_json=json.dumps(subcategories),
                    version=1,
                    created_at=now,
                    updated_at=now,
                    **values,
                )
                db.add(category)
                await db.commit()
                return self._to_dict(category)

        result = await self._with_timeout(_create(), "add_category")
        self._publish(result["id"])
        logger.info("category_added", id=result["id"], name=result["name"])
        return result

    async def _mutate(
        self,
        category_id: str,
        edit_subcategories: Callable[[list[dict]], list[dict]],
        values: dict,
        operation: str,
    ) -> dict:
        lock = self._lock_for(category_id)
        await self._with_timeout(lock.acquire(), operation)
        try:
            for attempt in range(1, self._max_retries + 1):
                async with self._session_factory() as db:
                    staged = await self._with_timeout(
                        self._stage(db, category_id, edit_subcategories, values), operation
                    )
                    if staged is None:
                        await db.rollback()
                        logger.warning(
                            "category_version_conflict", id=category_id, operation=operation, attempt=attempt
                        )
                        continue

                    # Committed writes are always published, however long the commit took
                    category, written = staged
                    await db.commit()
                    for key, value in written.items():
                        set_committed_value(category, key, value)
                    self._publish(category_id)
                    logger.info("category_updated", id=category_id, operation=operation)
                    return self._to_dict(category)
        finally:
            lock.release()

        raise ConflictError(
            f"{operation} on category {category_id} lost {self._max_retries} concurrent-write races",
            category_id=category_id,
        )

    async def _stage(self, db, category_id: str, edit_subcategories, values: dict):
        category = await self._load(db, category_id)
        seen_version = category.version
        subs = edit_subcategories(json.loads(category.subcategories_json or "[]"))
        if "name" in values and values["name"] != category.name:
            taken = (await db.execute(
                select(Category.id).where(Category.name == values["name"])
            )).scalar_one_or_none()
            if taken is not None:
                raise ValidationError(f"Category {values['name']!r} already exists", field="name")

        written = {
            "subcategories_json": json.dumps(subs),
            "version": seen_version + 1,
            "updated_at": utcnow(),
            **values,
        }
        result = await db.execute(
            update(Category)
            .where(Category.id == category_id, Category.version == seen_version)
            .values(**written)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return category, written

    @staticmethod
    def _validate_fields(data: dict) -> dict:
        unknown = set(data) - set(CATEGORY_FIELDS) - {"subcategories"}
        if unknown:
            raise ValidationError(
                f"Unknown category fields: {', '.join(sorted(unknown))}", fields=sorted(unknown)
            )
        values = {k: data[k] for k in ("icon", "color") if k in data}
        if "priority" in data:
            if data["priority"] not in CATEGORY_PRIORITIES:
                raise ValidationError(
                    f"Unknown category priority {data['priority']!r}", field="priority"
                )
            values["priority"] = data["priority"]
        if "status" in data:
            if data["status"] not in CATEGORY_STATUSES:
                raise ValidationError(f"Unknown category status {data['status']!r}", field="status")
            values["status"] = data["status"]
        return values

    @staticmethod
    def _find_subcategory(subs: list[dict], subcategory_id: str) -> dict:
        for sub in subs:
            if sub["id"] == subcategory_id:
                return sub
        raise NotFoundError(
            f"Subcategory {subcategory_id} not found", subcategory_id=subcategory_id
        )

    @staticmethod
    async def _load(db, category_id: str) -> Category:
        category = (await db.execute(
            select(Category).where(Category.id == category_id)
        )).scalar_one_or_none()
        if category is None:
            raise NotFoundError(f"Category {category_id} not found", category_id=category_id)
        return category

    @staticmethod
    def _to_dict(category: Category) -> dict:
        return {
            "id": category.id,
            "name": category.name,
            "priority": category.priority,
            "icon": category.icon,
            "color": category.color,
            "status": category.status,
            "subcategories": json.loads(category.subcategories_json or "[]"),
            "version": category.version,
            "created_at": isoformat(category.created_at),
            "updated_at": isoformat(category.updated_at),
        }
