from __future__ import annotations

from typing import Optional

from ..models import RawFrame, Record
from .queue import BoundedQueue
from .worker import QueueWorker, SampledDropLog


class Converter(QueueWorker[RawFrame]):
    """Turns raw frames into records for the persistence path.

    Relays backpressure the same way the listener does: a full record queue
    drops the record instead of holding up the frame queue. Closes the record
    queue once its own input is closed and drained.
    """

    name = "converter"

    def __init__(
        self,
        frames: BoundedQueue[RawFrame],
        records: BoundedQueue[Record],
        *,
        source_address: str,
        use_peer_address: bool = False,
        drop_log_every: int = 100,
    ):
        super().__init__(frames)
        self._records = records
        self._source_address = source_address
        self._use_peer = use_peer_address
        self._drops = SampledDropLog("converter", every=drop_log_every)
        self.converted = 0

    @property
    def dropped(self) -> int:
        return self._drops.count

    def convert(self, frame: RawFrame) -> Record:
        source: Optional[str] = frame.peer if self._use_peer else None
        return Record(
            source_address=source or self._source_address,
            payload=frame.payload,
            received_at=frame.received_at,
        )

    async def handle(self, item: RawFrame) -> None:
        result = self._records.try_put(self.convert(item))
        if result.accepted:
            self.converted += 1
        else:
            self._drops.record(result)

    async def on_closed(self) -> None:
        self._records.close()
