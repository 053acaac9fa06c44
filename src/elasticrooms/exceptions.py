class ElasticRoomsError(Exception):
    pass


class TransientQueryFailure(ElasticRoomsError):
    """The presence or room store could not be reached."""


class PreconditionStale(ElasticRoomsError):
    """A room changed between read and write."""

    def __init__(self, room_id: str, message: str | None = None) -> None:
        self.room_id = room_id
        super().__init__(message or f"Room {room_id} no longer matches the expected state")


class InvalidPartition(ElasticRoomsError):
    """A split would leave one side empty."""


class IncompatibleMerge(ElasticRoomsError):
    """No nearby room qualifies as a merge partner."""


class RoomNotFoundError(ElasticRoomsError):
    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        super().__init__(f"Room not found or closed: {room_id}")


class NotificationError(ElasticRoomsError):
    pass
