"""
Operator-driven deletion of hot tier backups.

A request is first planned (listing plus selection, no changes) and then
executed. Executing a plan for real requires explicit confirmation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfirmationRequired, RangeError
from .objects import StorageObject
from .retention import (
    filter_by_date_range,
    parse_date_range,
    parse_numeric_range,
    select_by_numeric_range,
    _newest_first,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeletionRequest:
    """
    What to delete.

    Exactly one selector applies: `object_key`, `latest`, `delete_all`,
    `numeric_range` or `date_range`. All but `object_key` work on the objects
    under `prefix`.
    """

    object_key: Optional[str] = None
    prefix: str = ''
    latest: bool = False
    delete_all: bool = False
    numeric_range: Optional[str] = None
    date_range: Optional[str] = None
    limit: Optional[int] = None

    def selector(self) -> str:
        chosen = [
            name for name, active in (
                ('object_key', bool(self.object_key)),
                ('latest', self.latest),
                ('delete_all', self.delete_all),
                ('numeric_range', bool(self.numeric_range)),
                ('date_range', bool(self.date_range)),
            ) if active
        ]
        if len(chosen) != 1:
            raise ValueError(
                "specify exactly one of object_key, latest, delete_all, numeric_range, date_range"
            )
        return chosen[0]


@dataclass
class DeletionPlan:
    request: DeletionRequest
    selector: str
    objects: List[StorageObject] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(o.size for o in self.objects)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'selector': self.selector,
            'prefix': self.request.prefix,
            'count': len(self.objects),
            'total_size': self.total_size,
            'objects': [o.to_dict() for o in self.objects]
        }


def plan_deletion(hot, request: DeletionRequest) -> DeletionPlan:
    """
    Resolve a request to the objects it would delete.

    Args:
        hot: HotStore to list from
        request: DeletionRequest

    Returns:
        DeletionPlan, objects newest first

    Raises:
        ValueError: If the request names no selector or several
        RangeError: If a range is malformed or out of bounds
        StorageError: If listing fails
    """
    selector = request.selector()

    if selector == 'object_key':
        return DeletionPlan(request, selector, [hot.head_object(request.object_key)])

    objects = hot.list_objects(request.prefix)

    if selector == 'latest':
        selected = _newest_first(objects)[:1]
    elif selector == 'delete_all':
        selected = _newest_first(objects)
    elif selector == 'numeric_range':
        start, end = parse_numeric_range(request.numeric_range)
        selected = select_by_numeric_range(objects, start, end)
    else:
        start, end = parse_date_range(request.date_range)
        selected = filter_by_date_range(objects, start, end)

    if request.limit is not None:
        if request.limit < 1:
            raise RangeError("limit must be >= 1")
        selected = selected[:request.limit]

    logger.info(f"Deletion plan ({selector}) under '{request.prefix}': {len(selected)} objects")
    return DeletionPlan(request, selector, selected)


def execute_deletion(hot, plan: DeletionPlan, dry_run: bool = False, confirm: bool = False) -> Dict[str, Any]:
    """
    Delete the objects in a plan.

    Args:
        hot: HotStore to delete from
        plan: Result of plan_deletion
        dry_run: Report only
        confirm: Must be True to delete anything

    Returns:
        Dict with the plan, 'deleted' keys and per-key 'errors'

    Raises:
        ConfirmationRequired: If not a dry run and confirm is not set
    """
    result = plan.to_dict()
    result['dry_run'] = dry_run

    if dry_run:
        for obj in plan.objects:
            logger.info(f"[DRY RUN] Would delete {obj.key} ({obj.size} bytes)")
        result['deleted'] = []
        result['errors'] = []
        return result

    if not confirm:
        raise ConfirmationRequired(
            f"Deleting {len(plan.objects)} objects requires confirmation"
        )

    if not plan.objects:
        result['deleted'] = []
        result['errors'] = []
        return result

    outcome = hot.delete_objects([o.key for o in plan.objects])
    for key, error in outcome['errors']:
        logger.error(f"Failed to delete {key}: {error}")
    logger.info(f"Deleted {len(outcome['deleted'])}/{len(plan.objects)} objects")

    result['deleted'] = outcome['deleted']
    result['errors'] = [{'key': k, 'error': e} for k, e in outcome['errors']]
    return result
