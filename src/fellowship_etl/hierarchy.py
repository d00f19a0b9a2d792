"""fellowship_etl.hierarchy

Hierarchy Synthesizer.

FellowshipOne exports ministries, activities, activity groups and rooms
(RLCs) as independent flat tables.  This module turns them into one group
tree under two well-known roots:

  Archived Groups          (ArchivedGroups)         general ministry tree
  Archived Serving Groups  (ArchivedServingGroups)  volunteer mirror tree

Serving variants
  A node whose name starts with the serving marker ("SERV:", case and
  space insensitive) belongs to the serving tree.  Foreign keys carry the
  variant:

    <id>          PLAIN            regular node
    SERV_<id>     SERVING_DIRECT   node explicitly marked serving
    SERVT_<id>    SERVING_CASCADE  descendant of a serving node

  Parents are resolved SERVT_ first, then SERV_ (only for nodes that are
  serving themselves), then plain.  A serving node whose parent exists
  only in the plain tree gets the whole plain ancestor chain cloned into
  the serving tree first; levels already cloned are reused, so repeated
  requests never duplicate ancestors.

Existing nodes are never modified: a foreign key that is already cached
returns the cached node.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Sequence

from fellowship_etl.batch import BatchWriter
from fellowship_etl.campus import CampusDirectory
from fellowship_etl.models import (
    GROUP_TYPE_GENERAL,
    GROUP_TYPE_SERVING_TEAM,
    Campus,
    GroupNode,
    GroupTypeNode,
    GroupTypeRole,
    LocationNode,
    ScheduleNode,
)
from fellowship_etl.normalize import remove_whitespace, title_case
from fellowship_etl.references import ReferenceSet
from fellowship_etl.shared import MissingDependencyError, RunCounters

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SERVING_MARKER = "SERV:"
DEFAULT_DELETE_MARKER = "Delete"

SERVING_DIRECT_PREFIX = "SERV_"
SERVING_CASCADE_PREFIX = "SERVT_"

ARCHIVED_GROUPS_KEY = "ArchivedGroups"
ARCHIVED_GROUPS_NAME = "Archived Groups"
ARCHIVED_SERVING_GROUPS_KEY = "ArchivedServingGroups"
ARCHIVED_SERVING_GROUPS_NAME = "Archived Serving Groups"
ARCHIVED_SCHEDULE_KEY = "ArchivedAttendance"
ARCHIVED_SCHEDULE_NAME = "Archived Attendance"
ATTENDANCE_HISTORY_TYPE_NAME = "Attendance History"


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

class ServingVariant(Enum):
    PLAIN = "plain"
    SERVING_DIRECT = "serving_direct"
    SERVING_CASCADE = "serving_cascade"

    @property
    def is_serving(self) -> bool:
        return self is not ServingVariant.PLAIN


_PREFIXES = {
    ServingVariant.PLAIN: "",
    ServingVariant.SERVING_DIRECT: SERVING_DIRECT_PREFIX,
    ServingVariant.SERVING_CASCADE: SERVING_CASCADE_PREFIX,
}


def is_serving_name(name: str | None, marker: str = DEFAULT_SERVING_MARKER) -> bool:
    if not name:
        return False
    return remove_whitespace(name).upper().startswith(remove_whitespace(marker).upper())


def strip_serving_marker(name: str, marker: str = DEFAULT_SERVING_MARKER) -> str:
    """Drop the serving marker: "SERV: greeters" becomes "Greeters"."""
    if not is_serving_name(name, marker):
        return name
    remaining = len(remove_whitespace(marker))
    i = 0
    while remaining and i < len(name):
        if not name[i].isspace():
            remaining -= 1
        i += 1
    return title_case(name[i:]) or name


def is_delete_sentinel(name: str | None, marker: str = DEFAULT_DELETE_MARKER) -> bool:
    return name is not None and name.lower() == marker.lower()


def classify(
    name: str | None,
    ancestor: ServingVariant = ServingVariant.PLAIN,
    marker: str = DEFAULT_SERVING_MARKER,
) -> ServingVariant:
    """Variant of a node given its own name and its nearest ancestor's variant."""
    if ancestor.is_serving:
        return ServingVariant.SERVING_CASCADE
    if is_serving_name(name, marker):
        return ServingVariant.SERVING_DIRECT
    return ServingVariant.PLAIN


def variant_key(source_key: str, variant: ServingVariant) -> str:
    return f"{_PREFIXES[variant]}{source_key}"


def serving_counterpart(
    plain_key: str,
    lookup: Callable[[str], GroupNode | None],
) -> GroupNode | None:
    """The serving node mirroring plain_key, cascading form first."""
    return (
        lookup(variant_key(plain_key, ServingVariant.SERVING_CASCADE))
        or lookup(variant_key(plain_key, ServingVariant.SERVING_DIRECT))
    )


def synthesize_missing_ancestors(
    chain: Sequence[GroupNode],
    target_variant: ServingVariant,
    lookup: Callable[[str], GroupNode | None],
    root: GroupNode,
    group_type_id: int | None,
) -> list[GroupNode]:
    """Serving-tree nodes still missing for a plain ancestor chain.

    chain is ordered top-down and excludes the plain archive root.  Each
    level whose serving counterpart already exists (either form) is reused
    as the attachment point for the next level; every other level becomes
    a new node keyed with target_variant that copies the plain node's name,
    campus and active flag.  The first missing level attaches to root.
    Returned nodes are unsaved and in creation order.
    """
    if not target_variant.is_serving:
        raise ValueError("serving ancestors need a serving variant")
    created: dict[str, GroupNode] = {}

    def find(key: str) -> GroupNode | None:
        return created.get(key) or lookup(key)

    new_nodes: list[GroupNode] = []
    parent = root
    for plain in chain:
        if plain.foreign_key is None:
            raise ValueError(f"group {plain.name!r} has no foreign key to mirror")
        existing = serving_counterpart(plain.foreign_key, find)
        if existing is not None:
            parent = existing
            continue
        node = GroupNode(
            foreign_key=variant_key(plain.foreign_key, target_variant),
            name=plain.name,
            group_type_id=group_type_id,
            parent_group_id=parent.id,
            campus_id=plain.campus_id,
            is_active=plain.is_active,
            parent=parent,
        )
        created[node.foreign_key] = node
        new_nodes.append(node)
        parent = node
    return new_nodes


def ancestor_chain(refs: ReferenceSet, node: GroupNode) -> list[GroupNode]:
    """node and its ancestors, top-down, stopping below the plain archive root."""
    chain: list[GroupNode] = []
    seen: set[int] = set()
    current: GroupNode | None = node
    while current is not None and current.foreign_key != ARCHIVED_GROUPS_KEY:
        if id(current) in seen:
            raise ValueError(f"group hierarchy cycle at {current.foreign_key!r}")
        seen.add(id(current))
        chain.append(current)
        current = current.parent or refs.group_by_id(current.parent_group_id)
    chain.reverse()
    return chain


def campus_group_key(parent: GroupNode, campus: Campus) -> str:
    """Campus-level groups are unique per parent."""
    token = campus.short_code or remove_whitespace(campus.name)
    if parent.foreign_key in (ARCHIVED_GROUPS_KEY, ARCHIVED_SERVING_GROUPS_KEY):
        return f"CAMPUS_{token}"
    return f"{parent.foreign_key}_{token}"


# ---------------------------------------------------------------------------
# HierarchySynthesizer
# ---------------------------------------------------------------------------

class HierarchySynthesizer:
    """Creates groups, group types, roles and the archive roots on demand.

    Nodes a later row may need as a parent are saved immediately; leaves
    can be staged with the BatchWriter instead.
    """

    def __init__(
        self,
        refs: ReferenceSet,
        writer: BatchWriter,
        campuses: CampusDirectory,
        counters: RunCounters | None = None,
        serving_marker: str = DEFAULT_SERVING_MARKER,
    ) -> None:
        self.refs = refs
        self.writer = writer
        self.campuses = campuses
        self.counters = counters if counters is not None else RunCounters()
        self.serving_marker = serving_marker

    # -- persistence --------------------------------------------------------

    def _save(self, node, stage: bool) -> None:
        parent = getattr(node, "parent", None)
        if not stage and parent is not None and parent.id is None:
            # staged parent needs an id before an immediate child save
            self.writer.flush()
        if stage:
            self.writer.stage(node)
        else:
            self.writer.save_now(node)

    # -- types, roles, schedules --------------------------------------------

    def system_type_id(self, system_key: str) -> int:
        type_id = self.refs.system_type_id(system_key)
        if type_id is None:
            raise MissingDependencyError(f"system group type {system_key!r} missing")
        return type_id

    def group_type(self, name: str, foreign_key: str | None = None) -> GroupTypeNode:
        key = foreign_key or remove_whitespace(name)
        node = self.refs.group_types.get(key)
        if node is None:
            node = GroupTypeNode(name=name, foreign_key=key)
            self._save(node, stage=False)
            self.refs.group_types[key] = node
            log.info("group type created: %s", name)
        return node

    def role(self, group_type_id: int, name: str, is_leader: bool = False) -> GroupTypeRole:
        role = self.refs.role(group_type_id, name)
        if role is None:
            role = GroupTypeRole(
                group_type_id=group_type_id, name=name, is_leader=is_leader,
                foreign_key=remove_whitespace(name),
            )
            self._save(role, stage=False)
            self.refs.add_role(role)
        return role

    def schedule(
        self,
        foreign_key: str,
        name: str,
        *,
        day_of_week: int | None = None,
        time_of_day=None,
        is_active: bool = True,
        description: str | None = None,
        stage: bool = False,
    ) -> tuple[ScheduleNode, bool]:
        """(schedule, created) for foreign_key."""
        node = self.refs.schedules.get(foreign_key)
        if node is not None:
            return node, False
        node = ScheduleNode(
            foreign_key=foreign_key, name=name, day_of_week=day_of_week,
            time_of_day=time_of_day, is_active=is_active, description=description,
        )
        self._save(node, stage=stage)
        self.refs.schedules[foreign_key] = node
        return node, True

    def archived_schedule(self) -> ScheduleNode:
        node, _ = self.schedule(ARCHIVED_SCHEDULE_KEY, ARCHIVED_SCHEDULE_NAME, is_active=False)
        return node

    # -- roots --------------------------------------------------------------

    def archive_root(self) -> GroupNode:
        node, _ = self.ensure_group(
            ARCHIVED_GROUPS_KEY,
            ARCHIVED_GROUPS_NAME,
            self.system_type_id(GROUP_TYPE_GENERAL),
            parent=None,
            is_active=False,
        )
        return node

    def serving_root(self) -> GroupNode:
        node, _ = self.ensure_group(
            ARCHIVED_SERVING_GROUPS_KEY,
            ARCHIVED_SERVING_GROUPS_NAME,
            self.system_type_id(GROUP_TYPE_SERVING_TEAM),
            parent=self.refs.serving_teams_group,
            is_active=False,
        )
        return node

    def root_for(self, variant: ServingVariant) -> GroupNode:
        return self.serving_root() if variant.is_serving else self.archive_root()

    # -- nodes --------------------------------------------------------------

    def ensure_group(
        self,
        foreign_key: str,
        name: str,
        group_type_id: int | None,
        parent: GroupNode | None,
        campus_id: int | None = None,
        *,
        is_active: bool = True,
        schedule_id: int | None = None,
        location_id: int | None = None,
        description: str | None = None,
        created_at: datetime | None = None,
        stage: bool = False,
    ) -> tuple[GroupNode, bool]:
        """(node, created); an existing node with the same key is returned untouched."""
        existing = self.refs.group_by_key(foreign_key)
        if existing is not None:
            return existing, False
        node = GroupNode(
            foreign_key=foreign_key,
            name=name,
            group_type_id=group_type_id,
            parent_group_id=parent.id if parent is not None else None,
            campus_id=campus_id,
            schedule_id=schedule_id,
            location_id=location_id,
            is_active=is_active,
            description=description,
            created_at=created_at,
            parent=parent,
        )
        self._save(node, stage=stage)
        self.refs.add_group(node)
        self.counters.groups_created += 1
        return node, True

    def campus_group(self, parent: GroupNode, campus: Campus, serving: bool) -> GroupNode:
        """Campus-level container under parent (mirrored in the serving tree)."""
        base_key = campus_group_key(parent, campus)
        if serving:
            existing = serving_counterpart(base_key, self.refs.group_by_key)
            if existing is not None:
                return existing
            key = variant_key(base_key, ServingVariant.SERVING_DIRECT)
            type_id = self.system_type_id(GROUP_TYPE_SERVING_TEAM)
        else:
            key = base_key
            type_id = parent.group_type_id
        node, _ = self.ensure_group(key, campus.name, type_id, parent, campus.id)
        return node

    def find(
        self,
        source_key: str,
        wants_serving: bool,
    ) -> tuple[GroupNode | None, ServingVariant]:
        """Lookup order SERVT_, then SERV_ (serving nodes only), then plain."""
        node = self.refs.group_by_key(variant_key(source_key, ServingVariant.SERVING_CASCADE))
        if node is not None:
            return node, ServingVariant.SERVING_CASCADE
        if wants_serving:
            node = self.refs.group_by_key(variant_key(source_key, ServingVariant.SERVING_DIRECT))
            if node is not None:
                return node, ServingVariant.SERVING_DIRECT
        node = self.refs.group_by_key(source_key)
        if node is not None:
            return node, ServingVariant.PLAIN
        return None, ServingVariant.PLAIN

    def imported(self, source_key: str) -> GroupNode | None:
        """The node a source row already produced, whichever variant it took.

        Parent lookups prefer SERVT_, so a row can classify differently on a
        re-run than when it was first imported; the row's own id is checked
        under every variant instead.
        """
        node, _ = self.find(source_key, wants_serving=True)
        return node

    def resolve_parent(
        self,
        source_key: str,
        wants_serving: bool,
    ) -> tuple[GroupNode | None, ServingVariant]:
        """Parent for a new node, cloning the plain chain when serving needs it."""
        node, variant = self.find(source_key, wants_serving)
        if node is None:
            return None, ServingVariant.PLAIN
        if wants_serving and not variant.is_serving:
            return self.clone_serving_chain(node), ServingVariant.SERVING_CASCADE
        return node, variant

    def clone_serving_chain(self, plain_node: GroupNode) -> GroupNode:
        """Mirror plain_node and its ancestors into the serving tree."""
        chain = ancestor_chain(self.refs, plain_node)
        new_nodes = synthesize_missing_ancestors(
            chain,
            ServingVariant.SERVING_CASCADE,
            self.refs.group_by_key,
            self.serving_root(),
            self.system_type_id(GROUP_TYPE_SERVING_TEAM),
        )
        for node in new_nodes:
            self._save(node, stage=False)
            self.refs.add_group(node)
        if new_nodes:
            self.counters.groups_created += len(new_nodes)
            self.counters.serving_groups_cloned += len(new_nodes)
            log.info(
                "serving hierarchy cloned for %s: %s",
                plain_node.foreign_key, [n.foreign_key for n in new_nodes],
            )
        counterpart = serving_counterpart(plain_node.foreign_key, self.refs.group_by_key)
        if counterpart is None:
            raise LookupError(f"serving counterpart of {plain_node.foreign_key!r} missing")
        return counterpart

    # -- locations ----------------------------------------------------------

    def ensure_location(
        self,
        name: str,
        parent_location_id: int | None,
        capacity: int | None = None,
        foreign_key: str | None = None,
    ) -> LocationNode:
        node = self.refs.find_location(name, parent_location_id)
        if node is None:
            node = LocationNode(
                name=name,
                parent_location_id=parent_location_id,
                foreign_key=foreign_key or remove_whitespace(name),
                capacity=capacity,
            )
            self._save(node, stage=False)
            self.refs.locations.append(node)
        return node

    def campus_location_id(self, campus: Campus | None) -> int | None:
        """Top of a room's location chain; None when the room has no campus."""
        if campus is None:
            return None
        if campus.location_id is not None:
            return campus.location_id
        node = self.ensure_location(
            campus.name, None,
            foreign_key=f"CAMPUS_{campus.short_code or remove_whitespace(campus.name)}",
        )
        return node.id
