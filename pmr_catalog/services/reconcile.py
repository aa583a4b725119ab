"""
Tag association reconciliation.

Turns an edited "desired tags per category" set for one entity into the
minimal set of association writes against the remote store:

    added   = desired - current   (by tag id)
    removed = current - desired   (by tag id)

Writes are applied best effort. Every link/unlink is independent; failures
are collected and returned, never raised.

There is no locking across reconcile runs. Two runs editing the same entity
concurrently can race on the same tag; runs touching disjoint tags compose.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import CatalogError, NotFound
from .gateway import RemoteGateway
from .models import PaginatedQuery
from .query import fetch_all, remote_call
from .tags import ASSOCIATIONS_RESOURCE, Tag, TagCategory, TagRegistry

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    PENDING = "pending"
    DIFFED = "diffed"
    APPLYING = "applying"
    COMPLETE = "complete"
    PARTIAL_FAILURE = "partial_failure"


_TRANSITIONS = {
    ReconcileState.PENDING: {ReconcileState.DIFFED},
    ReconcileState.DIFFED: {ReconcileState.APPLYING},
    ReconcileState.APPLYING: {ReconcileState.COMPLETE, ReconcileState.PARTIAL_FAILURE},
    ReconcileState.COMPLETE: set(),
    ReconcileState.PARTIAL_FAILURE: set(),
}


@dataclass(frozen=True)
class Association:
    """Link between an entity and a tag."""
    id: str
    entity_id: str
    tag_id: str
    tag_name: str
    category: TagCategory

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional["Association"]:
        """
        Build an Association from a remote record.

        Older records key the entity as "factoryId" and the category as
        "tagDivision"; both are accepted.
        """
        entity_id = record.get("entityId") or record.get("factoryId")
        tag_id = record.get("tagId")
        raw_category = record.get("category") or record.get("tagDivision")
        if not record.get("id") or not entity_id or not tag_id or not raw_category:
            return None
        try:
            category = TagCategory.parse(raw_category)
        except ValueError:
            return None
        return cls(
            id=str(record["id"]),
            entity_id=str(entity_id),
            tag_id=str(tag_id),
            tag_name=record.get("tagName") or "",
            category=category,
        )

    def as_tag(self) -> Tag:
        return Tag(self.tag_id, self.tag_name, self.category)


@dataclass
class ReconciliationPlan:
    """Tags to link and unlink, per category."""
    added: Dict[TagCategory, List[Tag]] = field(default_factory=dict)
    removed: Dict[TagCategory, List[Tag]] = field(default_factory=dict)

    @property
    def operation_count(self) -> int:
        return sum(len(t) for t in self.added.values()) + sum(len(t) for t in self.removed.values())

    def is_empty(self) -> bool:
        return self.operation_count == 0


@dataclass
class AssociationFailure:
    """One link or unlink that did not persist."""
    operation: str
    category: TagCategory
    tag_id: str
    tag_name: str
    error: str


@dataclass
class ReconciliationResult:
    entity_id: str
    state: ReconcileState = ReconcileState.PENDING
    plan: ReconciliationPlan = field(default_factory=ReconciliationPlan)
    linked: List[str] = field(default_factory=list)
    unlinked: List[str] = field(default_factory=list)
    failures: List[AssociationFailure] = field(default_factory=list)

    def transition(self, state: ReconcileState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid reconcile transition {self.state.value} -> {state.value}")
        logger.debug(f"Reconcile {self.entity_id}: {self.state.value} -> {state.value}")
        self.state = state


def _unique_by_id(tags: Iterable[Tag]) -> List[Tag]:
    seen = set()
    unique = []
    for tag in tags:
        if tag.id not in seen:
            seen.add(tag.id)
            unique.append(tag)
    return unique


def compute_plan(
    current: Mapping[TagCategory, Iterable[Tag]],
    desired: Mapping[TagCategory, Iterable[Tag]],
) -> ReconciliationPlan:
    """
    Compute the minimal add/remove diff, per category, by tag id.

    Only categories present in desired are diffed; other categories of
    current are left alone. A tag in both sets is untouched, so added and
    removed never overlap.
    """
    plan = ReconciliationPlan()
    for category, wanted in desired.items():
        category = TagCategory.parse(category)
        wanted = _unique_by_id(wanted)
        have = _unique_by_id(current.get(category, []))

        wanted_ids = {t.id for t in wanted}
        have_ids = {t.id for t in have}

        added = [t for t in wanted if t.id not in have_ids]
        removed = [t for t in have if t.id not in wanted_ids]
        if added:
            plan.added[category] = added
        if removed:
            plan.removed[category] = removed
    return plan


class AssociationReconciler:
    """
    Applies desired tag sets to an entity's associations.

    Usage:
        reconciler = AssociationReconciler(gateway, registry)
        result = await reconciler.reconcile("factory-1", {
            "material": ["Steel", {"id": "t-7", "name": "Copper"}],
            "region": [],
        })
        for failure in result.failures:
            ...
    """

    def __init__(self, gateway: RemoteGateway, registry: TagRegistry, page_size: int = 100):
        self.gateway = gateway
        self.registry = registry
        self.page_size = page_size

    async def fetch_current(self, entity_id: str) -> Dict[str, List[Association]]:
        """
        Read the entity's associations straight from the remote store.

        Returns:
            Mapping tag id -> associations (normally one)

        Raises:
            RemoteUnavailable: The current state could not be read
        """
        query = PaginatedQuery(
            ASSOCIATIONS_RESOURCE,
            page_size=self.page_size,
            order_field="createdAt",
            order_direction="asc",
            filters={"entityId": entity_id},
        )
        by_tag: Dict[str, List[Association]] = {}
        for record in await fetch_all(self.gateway, query):
            association = Association.from_record(record)
            if association is None or association.entity_id != entity_id:
                continue
            by_tag.setdefault(association.tag_id, []).append(association)
        return by_tag

    async def _resolve(self, category: TagCategory, item: Any) -> Tag:
        """Turn a desired item (Tag, name, or {id, name}) into a Tag with an id."""
        if isinstance(item, Tag):
            return item
        if isinstance(item, str):
            tag_id, name = None, item
        elif isinstance(item, dict):
            tag_id, name = item.get("id"), item.get("name") or ""
        else:
            raise ValueError(f"Unsupported desired tag: {item!r}")

        if tag_id:
            return Tag(str(tag_id), name.strip(), category)

        result = await self.registry.create(name, category)
        return Tag(result.id, name.strip(), category)

    async def _resolve_desired(self, desired_by_category: Mapping[Any, Iterable[Any]]) -> Dict[TagCategory, List[Tag]]:
        desired: Dict[TagCategory, List[Tag]] = {}
        for raw_category, items in desired_by_category.items():
            category = TagCategory.parse(raw_category)
            tags = desired.setdefault(category, [])
            seen = {t.identity for t in tags if t.name}
            for item in items:
                tag = await self._resolve(category, item)
                if tag.name and tag.identity in seen:
                    continue
                if tag.name:
                    seen.add(tag.identity)
                tags.append(tag)
        return desired

    async def _link(self, entity_id: str, category: TagCategory, tag: Tag) -> Optional[AssociationFailure]:
        payload = {
            "entityId": entity_id,
            "tagId": tag.id,
            "tagName": tag.name,
            "category": category.value,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await remote_call(ASSOCIATIONS_RESOURCE, self.gateway.create(ASSOCIATIONS_RESOURCE, payload))
        except CatalogError as e:
            logger.error(f"Failed to link tag {tag.id} to {entity_id}: {e}")
            return AssociationFailure("link", category, tag.id, tag.name, str(e))
        return None

    async def _unlink(
        self,
        entity_id: str,
        category: TagCategory,
        tag: Tag,
        associations: List[Association],
    ) -> Optional[AssociationFailure]:
        for association in associations:
            try:
                await remote_call(
                    ASSOCIATIONS_RESOURCE,
                    self.gateway.delete(ASSOCIATIONS_RESOURCE, association.id),
                )
            except NotFound:
                # Already gone, e.g. removed by a concurrent edit
                logger.debug(f"Association {association.id} already removed")
            except CatalogError as e:
                logger.error(f"Failed to unlink tag {tag.id} from {entity_id}: {e}")
                return AssociationFailure("unlink", category, tag.id, tag.name, str(e))
        return None

    async def reconcile(
        self,
        entity_id: str,
        desired_by_category: Mapping[Any, Iterable[Any]],
    ) -> ReconciliationResult:
        """
        Bring an entity's associations in line with the desired tags.

        Args:
            entity_id: Entity whose tags are edited
            desired_by_category: category -> desired tags; categories left out
                are not touched

        Returns:
            ReconciliationResult in state COMPLETE or PARTIAL_FAILURE

        Raises:
            RemoteUnavailable: Current associations could not be read
            ValueError: Unknown category or unusable desired tag
        """
        result = ReconciliationResult(entity_id=entity_id)

        current_by_tag = await self.fetch_current(entity_id)
        desired = await self._resolve_desired(desired_by_category)

        current: Dict[TagCategory, List[Tag]] = {}
        for associations in current_by_tag.values():
            first = associations[0]
            current.setdefault(first.category, []).append(first.as_tag())

        result.plan = compute_plan(current, desired)
        result.transition(ReconcileState.DIFFED)

        if result.plan.is_empty():
            logger.info(f"Reconcile {entity_id}: nothing to change")
        else:
            logger.info(f"Reconcile {entity_id}: {result.plan.operation_count} association writes")

        result.transition(ReconcileState.APPLYING)

        operations = []
        for category, tags in result.plan.removed.items():
            for tag in tags:
                operations.append(("unlink", tag, self._unlink(entity_id, category, tag, current_by_tag[tag.id])))
        for category, tags in result.plan.added.items():
            for tag in tags:
                operations.append(("link", tag, self._link(entity_id, category, tag)))

        outcomes = await asyncio.gather(*(op for _, _, op in operations))

        for (kind, tag, _), failure in zip(operations, outcomes):
            if failure is not None:
                result.failures.append(failure)
            elif kind == "link":
                result.linked.append(tag.id)
            else:
                result.unlinked.append(tag.id)

        if result.failures:
            logger.warning(f"Reconcile {entity_id}: {len(result.failures)} association writes failed")
            result.transition(ReconcileState.PARTIAL_FAILURE)
        else:
            result.transition(ReconcileState.COMPLETE)
        return result
