"""Order-key computation for moving notes within the displayed list.

Notes are displayed by ``order`` descending. A move never renumbers the
untouched notes; the moved notes get one new key placed at the insertion
point. Every moved note in a batch receives the same key, so a batch move
lands as a block at one position.

Repeated insertions between the same two neighbours halve the gap each
time, so after enough of them the float keys stop being distinct. This is
a known limitation of midpoint keys.
"""
import logging
import uuid
from typing import Dict, Iterable, Sequence

from notestore.exceptions import ErrorCode, ValidationError
from notestore.models.schema import Note

logger = logging.getLogger(__name__)

ORDER_OFFSET = 100.0


def insertion_order(
    destination: int, orders: Sequence[float], offset: float = ORDER_OFFSET
) -> float:
    """Compute the order key for an item inserted before position destination.

    Args:
        destination: Insertion point in ``[0, len(orders)]``; ``len(orders)``
            means after the last item.
        orders: Order keys of the current listing, in display order.
        offset: Gap used when inserting at either end.

    Raises:
        ValidationError: If destination is out of range or orders is empty.
    """
    if not orders:
        raise ValidationError(
            "Cannot compute a position in an empty list",
            field="destination",
            value=destination,
            code=ErrorCode.INVALID_MOVE,
        )
    if destination < 0 or destination > len(orders):
        raise ValidationError(
            f"Destination {destination} is outside 0..{len(orders)}",
            field="destination",
            value=destination,
            code=ErrorCode.INVALID_MOVE,
        )
    if destination == 0:
        return orders[0] + offset
    if destination == len(orders):
        return orders[destination - 1] - offset
    below = orders[destination]
    above = orders[destination - 1]
    return below + (above - below) / 2


def reorder(
    source_offsets: Iterable[int],
    destination: int,
    notes: Sequence[Note],
    offset: float = ORDER_OFFSET,
) -> Dict[uuid.UUID, float]:
    """Compute new order keys for moving notes to destination.

    Args:
        source_offsets: Positions in notes of the notes being moved.
        destination: Insertion point in ``[0, len(notes)]``, measured in the
            listing before the move.
        notes: The current listing, in display order.
        offset: Gap used when moving to either end.

    Returns:
        Mapping of moved note id to its new order key (all the same key).
        Empty when nothing is moved.

    Raises:
        ValidationError: If an offset or the destination is out of range.
    """
    sources = sorted(set(source_offsets))
    if not sources:
        return {}
    for source in sources:
        if source < 0 or source >= len(notes):
            raise ValidationError(
                f"Source position {source} is outside 0..{len(notes) - 1}",
                field="source_offsets",
                value=source,
                code=ErrorCode.INVALID_MOVE,
            )

    new_order = insertion_order(destination, [note.order for note in notes], offset)
    logger.debug(f"Moving {len(sources)} note(s) to position {destination} (order {new_order})")
    return {notes[source].id: new_order for source in sources}
