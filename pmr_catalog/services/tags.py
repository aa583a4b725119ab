"""
Global tag catalog with deduplication and a local fallback mode.

Tags are deduplicated by identity: the trimmed, lowercased name together with
the category. The registry normally works against the remote store
(REMOTE_PRIMARY) and mirrors the catalog into a local durable store. Any
remote failure switches it to LOCAL_FALLBACK, where reads and writes go to
the local mirror until probe() finds the remote store healthy again.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .cache import CacheClass, CacheStore
from .errors import FallbackExhausted, NotFound, RemoteUnavailable
from .gateway import RemoteGateway
from .models import PaginatedQuery
from .query import fetch_all, fetch_remote_page, remote_call
from .stores import DurableStore

logger = logging.getLogger(__name__)

TAGS_RESOURCE = "tags"
ASSOCIATIONS_RESOURCE = "tag-associations"

# Where the catalog lives in the local durable store and in the cache
LOCAL_CLASS = "registry"
LOCAL_KEY = "catalog"
CATALOG_CACHE_KEY = "tags:catalog"


class TagCategory(str, Enum):
    """Fixed set of tag categories."""
    REGION = "region"
    MATERIAL = "material"
    OTHER = "other"
    PRODUCT_TYPE = "productType"

    @classmethod
    def parse(cls, value: Any) -> "TagCategory":
        """
        Parse a category, accepting legacy names.

        Raises:
            ValueError: If the value names no known category
        """
        if isinstance(value, cls):
            return value
        category = _CATEGORY_ALIASES.get(str(value).strip().lower())
        if category is None:
            raise ValueError(f"Unknown tag category '{value}'")
        return category


_CATEGORY_ALIASES: Dict[str, TagCategory] = {
    "region": TagCategory.REGION,
    "regiao": TagCategory.REGION,
    "região": TagCategory.REGION,
    "material": TagCategory.MATERIAL,
    "other": TagCategory.OTHER,
    "outros": TagCategory.OTHER,
    "producttype": TagCategory.PRODUCT_TYPE,
    "tipoproduto": TagCategory.PRODUCT_TYPE,
}


def normalize_name(name: str) -> str:
    return name.strip().lower()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Tag:
    """A catalog tag."""
    id: str
    name: str
    category: TagCategory
    created_at: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, TagCategory]:
        return normalize_name(self.name), self.category

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional["Tag"]:
        """
        Build a Tag from a stored record.

        Accepts flat records as well as legacy ones that nest the tag under
        "tagData" and name the category "division".

        Returns:
            Tag, or None if the record is not a usable tag
        """
        if not isinstance(record, dict) or record.get("type") == "association_backup":
            return None

        data = record.get("tagData") if isinstance(record.get("tagData"), dict) else record
        tag_id = data.get("id") or record.get("id")
        name = data.get("name")
        raw_category = data.get("category") or data.get("division")
        if not tag_id or not isinstance(name, str) or not name.strip() or not raw_category:
            return None

        try:
            category = TagCategory.parse(raw_category)
        except ValueError:
            logger.debug(f"Skipping tag {tag_id} with unknown category '{raw_category}'")
            return None

        return cls(
            id=str(tag_id),
            name=name.strip(),
            category=category,
            created_at=data.get("createdAt") or record.get("createdAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "createdAt": self.created_at,
        }


Catalog = Dict[TagCategory, List[Tag]]


def group_by_category(tags: Iterable[Tag]) -> Catalog:
    """
    Group tags by category, dropping later duplicates of an identity.

    Every category key is present, possibly with an empty list.
    """
    catalog: Catalog = {category: [] for category in TagCategory}
    seen: Set[Tuple[str, TagCategory]] = set()
    for tag in tags:
        if tag.identity in seen:
            continue
        seen.add(tag.identity)
        catalog[tag.category].append(tag)
    return catalog


def _parse_records(records: Iterable[Dict[str, Any]]) -> List[Tag]:
    tags = []
    for record in records:
        tag = Tag.from_record(record)
        if tag is not None:
            tags.append(tag)
    return tags


def _flatten(catalog: Catalog) -> List[Tag]:
    return [tag for tags in catalog.values() for tag in tags]


def _serialize(catalog: Catalog) -> Dict[str, List[Dict[str, Any]]]:
    return {category.value: [tag.to_dict() for tag in tags] for category, tags in catalog.items()}


def _deserialize(payload: Any) -> Catalog:
    records: List[Dict[str, Any]] = []
    if isinstance(payload, dict):
        for category, items in payload.items():
            for item in items or []:
                if isinstance(item, dict):
                    records.append({"category": category, **item})
    return group_by_category(_parse_records(records))


def _find(tags: Iterable[Tag], identity: Tuple[str, TagCategory]) -> Optional[Tag]:
    for tag in tags:
        if tag.identity == identity:
            return tag
    return None


class RegistryMode(str, Enum):
    REMOTE_PRIMARY = "remote_primary"
    LOCAL_FALLBACK = "local_fallback"


@dataclass
class CreateResult:
    """
    Outcome of a catalog write.

    created is True when the write happened. A refused write carries
    reason="duplicate" and the id of the tag that already holds the identity.
    """
    created: bool
    id: str
    reason: Optional[str] = None


class TagRegistry:
    """
    Deduplicated tag catalog.

    Usage:
        registry = TagRegistry(gateway, cache, JsonFileStore(path))

        result = await registry.create("Steel", "material")
        again = await registry.create("  steel ", "material")
        assert again.reason == "duplicate" and again.id == result.id

        catalog = await registry.get_all()
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: CacheStore,
        local_store: DurableStore,
        page_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the registry.

        Args:
            gateway: Remote document store
            cache: Shared two-tier cache (catalog mirrored under class "tag")
            local_store: Durable store holding the local catalog mirror
            page_size: Page size used when reading the whole catalog
            clock: Returns the current time in epoch seconds
        """
        self.gateway = gateway
        self.cache = cache
        self.local_store = local_store
        self.page_size = page_size
        self._clock = clock
        self._mode = RegistryMode.REMOTE_PRIMARY
        self._inflight: Dict[Tuple[str, TagCategory], asyncio.Future] = {}
        self._cascades: Set[asyncio.Task] = set()
        # Guards read-modify-write of the local catalog
        self._local_lock = asyncio.Lock()

    @property
    def mode(self) -> RegistryMode:
        return self._mode

    def _set_mode(self, mode: RegistryMode, reason: str) -> None:
        """The only place the operating mode changes."""
        if mode is self._mode:
            return
        if mode is RegistryMode.LOCAL_FALLBACK:
            logger.warning(f"Tag registry switching to local fallback: {reason}")
        else:
            logger.info(f"Tag registry back to remote primary: {reason}")
        self._mode = mode

    async def _with_fallback(
        self,
        remote_op: Callable[[], Awaitable[Any]],
        local_op: Callable[[], Awaitable[Any]],
    ) -> Any:
        if self._mode is RegistryMode.REMOTE_PRIMARY:
            try:
                return await remote_op()
            except RemoteUnavailable as e:
                self._set_mode(RegistryMode.LOCAL_FALLBACK, str(e))
        return await local_op()

    # --- remote side ---

    async def _fetch_remote_tags(self) -> List[Tag]:
        # Oldest first, so the earliest tag of an identity wins dedup
        query = PaginatedQuery(
            TAGS_RESOURCE,
            page_size=self.page_size,
            order_field="createdAt",
            order_direction="asc",
        )
        return _parse_records(await fetch_all(self.gateway, query))

    # --- local side ---

    async def _load_local(self) -> Catalog:
        stored = await self.local_store.get(LOCAL_CLASS, LOCAL_KEY)
        if stored is None:
            return group_by_category([])
        value, _ = stored
        return _deserialize(value)

    async def _save_local(self, catalog: Catalog) -> None:
        await self.local_store.put(LOCAL_CLASS, LOCAL_KEY, _serialize(catalog), self._clock())

    async def _mirror(self, catalog: Catalog) -> None:
        """Copy a freshly read remote catalog into the cache and the local store."""
        await self.cache.set(CATALOG_CACHE_KEY, _serialize(catalog), CacheClass.TAG)
        try:
            await self._save_local(catalog)
        except Exception as e:
            logger.warning(f"Could not mirror tag catalog locally: {e}")

    async def _mirror_change(self, change: Callable[[List[Tag]], List[Tag]]) -> None:
        """Apply a change made remotely to the local mirror, best effort."""
        try:
            async with self._local_lock:
                catalog = await self._load_local()
                await self._save_local(group_by_category(change(_flatten(catalog))))
        except Exception as e:
            logger.warning(f"Could not update local tag mirror: {e}")

    # --- reads ---

    async def get_all(self, force_refresh: bool = False) -> Catalog:
        """
        Get the whole catalog grouped by category.

        Args:
            force_refresh: Skip the cached catalog and read the remote store

        Returns:
            Mapping category -> tags, every category present

        Raises:
            FallbackExhausted: Remote and local store both failed
        """
        if self._mode is RegistryMode.LOCAL_FALLBACK:
            return await self._load_local()

        if not force_refresh:
            cached = await self.cache.get(CATALOG_CACHE_KEY, CacheClass.TAG)
            if cached is not None:
                return _deserialize(cached)

        try:
            tags = await self._fetch_remote_tags()
        except RemoteUnavailable as e:
            self._set_mode(RegistryMode.LOCAL_FALLBACK, str(e))
            try:
                return await self._load_local()
            except Exception as local_error:
                raise FallbackExhausted(TAGS_RESOURCE, [e, local_error]) from local_error

        catalog = group_by_category(tags)
        await self._mirror(catalog)
        return catalog

    async def probe(self) -> bool:
        """
        Retry the remote store once.

        Returns:
            True if the registry is (back) in remote-primary mode
        """
        try:
            await fetch_remote_page(self.gateway, PaginatedQuery(TAGS_RESOURCE, page_size=1))
        except RemoteUnavailable as e:
            logger.warning(f"Tag registry probe failed: {e}")
            return self._mode is RegistryMode.REMOTE_PRIMARY
        self._set_mode(RegistryMode.REMOTE_PRIMARY, "probe succeeded")
        return True

    # --- writes ---

    async def create(self, name: str, category: Any) -> CreateResult:
        """
        Create a tag unless its identity already exists.

        Concurrent creates of one identity share a single creation; every
        caller but the first gets reason="duplicate" with the first id.

        Raises:
            ValueError: Empty name or unknown category
        """
        category = TagCategory.parse(category)
        name = (name or "").strip()
        if not name:
            raise ValueError("Tag name must not be empty")
        identity = (normalize_name(name), category)

        pending = self._inflight.get(identity)
        if pending is not None:
            first = await asyncio.shield(pending)
            return CreateResult(created=False, id=first.id, reason="duplicate")

        future = asyncio.ensure_future(self._with_fallback(
            lambda: self._create_remote(name, category),
            lambda: self._create_local(name, category),
        ))
        self._inflight[identity] = future
        try:
            return await future
        finally:
            self._inflight.pop(identity, None)

    async def _create_remote(self, name: str, category: TagCategory) -> CreateResult:
        identity = (normalize_name(name), category)
        existing = _find(await self._fetch_remote_tags(), identity)
        if existing is not None:
            logger.info(f"Tag '{name}' ({category.value}) already exists as {existing.id}")
            return CreateResult(created=False, id=existing.id, reason="duplicate")

        created_at = _now_iso()
        created = await remote_call(TAGS_RESOURCE, self.gateway.create(
            TAGS_RESOURCE, {"name": name, "category": category.value, "createdAt": created_at}
        ))
        tag = Tag(str(created["id"]), name, category, created_at)
        logger.info(f"Created tag {tag.id}: '{name}' ({category.value})")

        await self._mirror_change(lambda tags: tags + [tag])
        await self.invalidate_cache()
        return CreateResult(created=True, id=tag.id)

    async def _create_local(self, name: str, category: TagCategory) -> CreateResult:
        identity = (normalize_name(name), category)
        async with self._local_lock:
            tags = _flatten(await self._load_local())
            existing = _find(tags, identity)
            if existing is not None:
                return CreateResult(created=False, id=existing.id, reason="duplicate")

            tag = Tag(f"local-{uuid.uuid4().hex}", name, category, _now_iso())
            await self._save_local(group_by_category(tags + [tag]))
        await self.invalidate_cache()
        logger.info(f"Created tag {tag.id} locally: '{name}' ({category.value})")
        return CreateResult(created=True, id=tag.id)

    async def update(self, tag_id: str, category: Any, name: str) -> CreateResult:
        """
        Rename a tag.

        Refused with reason="duplicate" when another tag already holds the
        new identity. The name copied into the tag's associations is updated
        in the background, like the delete cascade.

        Raises:
            NotFound: If no tag with that id exists in the category
            ValueError: Empty name or unknown category
        """
        category = TagCategory.parse(category)
        name = (name or "").strip()
        if not name:
            raise ValueError("Tag name must not be empty")

        def _check(tags: List[Tag]) -> Optional[CreateResult]:
            if not any(t.id == tag_id and t.category is category for t in tags):
                raise NotFound(TAGS_RESOURCE, tag_id)
            clash = _find(tags, (normalize_name(name), category))
            if clash is not None and clash.id != tag_id:
                return CreateResult(created=False, id=clash.id, reason="duplicate")
            return None

        def _rename(tags: List[Tag]) -> List[Tag]:
            return [Tag(t.id, name, t.category, t.created_at) if t.id == tag_id else t for t in tags]

        async def _remote() -> CreateResult:
            refused = _check(await self._fetch_remote_tags())
            if refused:
                return refused
            await remote_call(TAGS_RESOURCE, self.gateway.update(
                TAGS_RESOURCE, tag_id, {"name": name, "category": category.value}
            ))
            await self._mirror_change(_rename)
            return CreateResult(created=True, id=tag_id)

        async def _local() -> CreateResult:
            async with self._local_lock:
                tags = _flatten(await self._load_local())
                refused = _check(tags)
                if refused:
                    return refused
                await self._save_local(group_by_category(_rename(tags)))
            return CreateResult(created=True, id=tag_id)

        result = await self._with_fallback(_remote, _local)
        if result.created:
            logger.info(f"Renamed tag {tag_id} to '{name}'")
            await self.invalidate_cache()
            self._schedule_cascade(
                tag_id, "rename",
                lambda assoc_id: self.gateway.update(ASSOCIATIONS_RESOURCE, assoc_id, {"tagName": name}),
            )
        return result

    async def delete(self, tag_id: str, category: Any) -> None:
        """
        Delete a tag and schedule removal of its associations.

        The association cascade runs in the background; its failures are
        logged and never reach the caller. Use drain() to wait for it.

        Raises:
            NotFound: If the tag does not exist
        """
        category = TagCategory.parse(category)

        def _without(tags: List[Tag]) -> List[Tag]:
            return [t for t in tags if t.id != tag_id]

        async def _remote() -> None:
            await remote_call(TAGS_RESOURCE, self.gateway.delete(TAGS_RESOURCE, tag_id))
            await self._mirror_change(_without)

        async def _local() -> None:
            async with self._local_lock:
                tags = _flatten(await self._load_local())
                if not any(t.id == tag_id and t.category is category for t in tags):
                    raise NotFound(TAGS_RESOURCE, tag_id)
                await self._save_local(group_by_category(_without(tags)))

        await self._with_fallback(_remote, _local)
        logger.info(f"Deleted tag {tag_id} ({category.value})")
        await self.invalidate_cache()
        self._schedule_cascade(
            tag_id, "delete",
            lambda assoc_id: self.gateway.delete(ASSOCIATIONS_RESOURCE, assoc_id),
        )

    async def invalidate_cache(self) -> None:
        """Drop every cached tag read."""
        await self.cache.invalidate_class(CacheClass.TAG)

    # --- association cascade ---

    def _schedule_cascade(
        self,
        tag_id: str,
        action: str,
        apply: Callable[[str], Awaitable[Any]],
    ) -> None:
        task = asyncio.create_task(self._cascade(tag_id, action, apply))
        self._cascades.add(task)
        task.add_done_callback(self._cascades.discard)

    async def _cascade(self, tag_id: str, action: str, apply: Callable[[str], Awaitable[Any]]) -> None:
        """
        Apply a tag delete or rename to every association of the tag.

        Runs in the background, so every failure is logged here and goes no
        further.
        """
        try:
            records = await fetch_all(self.gateway, PaginatedQuery(
                ASSOCIATIONS_RESOURCE, page_size=self.page_size, filters={"tagId": tag_id}
            ))
        except Exception as e:
            logger.error(f"Could not list associations of tag {tag_id} to {action}: {e}")
            return

        done = 0
        for record in records:
            assoc_id = record.get("id") if isinstance(record, dict) else None
            if not assoc_id:
                logger.warning(f"Skipping unusable association record of tag {tag_id}: {record!r}")
                continue
            try:
                await remote_call(ASSOCIATIONS_RESOURCE, apply(str(assoc_id)))
                done += 1
            except Exception as e:
                logger.error(f"Could not {action} association {assoc_id} of tag {tag_id}: {e}")

        logger.info(f"Applied {action} to {done}/{len(records)} associations of tag {tag_id}")

    async def drain(self) -> None:
        """Wait for every scheduled association cascade to finish."""
        while self._cascades:
            await asyncio.gather(*list(self._cascades), return_exceptions=True)
