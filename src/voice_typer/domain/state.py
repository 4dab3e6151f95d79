from enum import Enum, auto


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    TRANSCRIBING = auto()


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {
        ConnectionState.TRANSCRIBING,
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.TRANSCRIBING: {
        ConnectionState.CONNECTED,
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
    },
}


class InvalidTransitionError(Exception):
    pass


def validate_transition(current: ConnectionState, target: ConnectionState) -> None:
    if current == target or target == ConnectionState.DISCONNECTED:
        return
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")


def is_connected(state: ConnectionState) -> bool:
    return state in (ConnectionState.CONNECTED, ConnectionState.TRANSCRIBING)
