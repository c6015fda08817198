"""Identifier-keyed diffing and replay of snapshots"""

import copy
import logging

from .errors import IntegrityError
from .models import (
    AUXILIARY_FIELDS,
    CARRIED_FIELDS,
    DIFF_FIELDS,
    ChangeSet,
    FieldChange,
    Item,
    ModifiedItem,
    Snapshot,
)


class DiffEngine:
    """Compute ChangeSets between snapshots and replay them onto a base"""

    def __init__(self, fields: tuple[str, ...] = DIFF_FIELDS + CARRIED_FIELDS):
        self.fields = fields
        self.logger = logging.getLogger("DiffEngine")

    def diff(self, old: Snapshot, new: Snapshot) -> ChangeSet:
        """Compute the ChangeSet that turns ``old`` into ``new``

        An item counts as modified when any of its fields differs; the change
        set carries the complete new item so replay reproduces it exactly.

        Args:
            old: Base snapshot
            new: Target snapshot

        Returns:
            ChangeSet with disjoint added/removed/modified lists
        """
        old_items = old.by_id()
        new_items = new.by_id()
        changes = ChangeSet()

        for item in new.items:
            previous = old_items.get(item.id)
            if previous is None:
                changes.added.append(copy.deepcopy(item))
                continue

            if previous != item:
                changes.modified.append(ModifiedItem(item=copy.deepcopy(item), delta=self.field_delta(previous, item)))

        changes.removed = [item.id for item in old.items if item.id not in new_items]

        # Only record the order when replay would not reproduce it on its own
        removed = set(changes.removed)
        natural_order = [i for i in old.ids() if i not in removed] + [item.id for item in changes.added]
        if natural_order != new.ids():
            changes.order = new.ids()

        for name in AUXILIARY_FIELDS:
            if old.get_auxiliary(name) != new.get_auxiliary(name):
                changes.auxiliary[name] = copy.deepcopy(new.get_auxiliary(name))

        self.logger.debug(f"Computed change set: {changes.summary()}")
        return changes

    def field_delta(self, old: Item, new: Item) -> dict[str, FieldChange]:
        """Field-level differences by deep-value equality"""
        delta = {}
        for name in self.fields:
            old_value = old.get_field(name)
            new_value = new.get_field(name)
            if old_value != new_value:
                delta[name] = FieldChange(old=copy.deepcopy(old_value), new=copy.deepcopy(new_value))
        return delta

    def reconstruct(self, base: Snapshot, changes: ChangeSet) -> Snapshot:
        """Apply ``changes`` to a copy of ``base``

        Raises:
            IntegrityError: If the change set does not fit the base snapshot
        """
        items = {item.id: copy.deepcopy(item) for item in base.items}

        for item_id in changes.removed:
            if item_id not in items:
                raise IntegrityError(f"Change set removes item '{item_id}' which is not in the base snapshot")
            del items[item_id]

        for modified in changes.modified:
            if modified.item.id not in items:
                raise IntegrityError(
                    f"Change set modifies item '{modified.item.id}' which is not in the base snapshot"
                )
            # Replacing keeps the item's position in the dict
            items[modified.item.id] = copy.deepcopy(modified.item)

        for item in changes.added:
            if item.id in items:
                raise IntegrityError(f"Change set adds item '{item.id}' which already exists in the base snapshot")
            items[item.id] = copy.deepcopy(item)

        if changes.order is not None:
            if sorted(changes.order) != sorted(items):
                raise IntegrityError("Change set ordering does not match the reconstructed items")
            ordered = [items[item_id] for item_id in changes.order]
        else:
            ordered = list(items.values())

        auxiliary = {name: copy.deepcopy(base.get_auxiliary(name)) for name in AUXILIARY_FIELDS}
        for name, value in changes.auxiliary.items():
            if name in auxiliary:
                auxiliary[name] = copy.deepcopy(value)

        return Snapshot(items=ordered, **auxiliary)
