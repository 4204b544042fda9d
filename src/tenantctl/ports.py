"""Port allocation over the catalog's port pool."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from .catalog.models import PortAssignment
from .errors import PoolExhausted

if TYPE_CHECKING:
    from .catalog import Catalog

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PortAllocator:
    """Hand out and reclaim ports from the ``port_pool`` table.

    Allocation picks the lowest available port and claims it with a
    conditional update (``... WHERE port = ? AND is_available``). When another
    process claims the same candidate first the update touches no rows and the
    next lowest port is tried, so no two callers ever receive the same port
    and no in-process lock is needed.
    """

    catalog: Catalog

    def allocate(self) -> int:
        """Claim the lowest available port and return it."""
        while True:
            with self.catalog.session() as session:
                candidate = session.scalars(
                    select(PortAssignment.port)
                    .where(PortAssignment.is_available.is_(True))
                    .order_by(PortAssignment.port)
                    .limit(1)
                ).first()
                if candidate is None:
                    raise PoolExhausted("No available ports left in the pool.")
                claimed = session.execute(
                    update(PortAssignment)
                    .where(
                        PortAssignment.port == candidate,
                        PortAssignment.is_available.is_(True),
                    )
                    .values(is_available=False, instance_id=None)
                )
                if claimed.rowcount == 1:
                    LOGGER.debug("Allocated port %d", candidate)
                    return candidate
            LOGGER.debug("Port %d was claimed concurrently; retrying", candidate)

    def release(self, port: int) -> None:
        """Return *port* to the pool; releasing a free or unknown port is a no-op."""
        with self.catalog.session() as session:
            result = session.execute(
                update(PortAssignment)
                .where(PortAssignment.port == port)
                .values(is_available=True, instance_id=None)
            )
            if result.rowcount == 0:
                LOGGER.debug("Port %d is not part of the pool; nothing to release", port)

    def list_entries(self) -> list[dict[str, object]]:
        """Return the pool sorted by port."""
        return self.catalog.list_ports()

    def available_ports(self) -> list[int]:
        """Return the ports that can currently be allocated."""
        return [int(entry["port"]) for entry in self.catalog.list_ports(available=True)]


__all__ = ["PortAllocator"]
