"""
thingdev - development relay for device applications.

The relay keeps an application process running against its current source
and moves envelopes between that process, a connected device emulator and
the UI embedded in the emulator.  Each concern lives in its own module:

    supervisor.py  → application process lifecycle, debounce and respawn
    handlers.py    → envelope dispatch table and application record updates
    server_bus.py  → relay-side websocket pub/sub
    client_bus.py  → emulator-side pub/sub with reconnect and outbound queue
    router.py      → emulator routing between relay and embedded UI
    relay.py       → composition of the relay process
    app_process.py → runner executed inside the supervised child

Use ``thingdev`` or ``python -m thingdev`` to start the relay.
"""

from .envelope import Envelope, SendType, parse_envelope  # noqa: F401
from .errors import ConfigError, FrameError, ManifestError, SpawnError, ThingDevError  # noqa: F401
from .record import ApplicationRecord  # noqa: F401
from .subscriptions import SubscriptionRegistry  # noqa: F401
from .handlers import HandlerTable  # noqa: F401
from .server_bus import ServerMessageBus  # noqa: F401
from .client_bus import ClientMessageBus, ConnectionState  # noqa: F401
from .supervisor import ProcessSupervisor, SupervisorState  # noqa: F401
from .router import ClientService, Emulator, MessageRouter  # noqa: F401
from .relay import ClientRequestService, DevServer  # noqa: F401
from .config import DevConfig, load_config  # noqa: F401

__all__ = [
    "Envelope",
    "SendType",
    "parse_envelope",
    "ThingDevError",
    "ConfigError",
    "FrameError",
    "ManifestError",
    "SpawnError",
    "ApplicationRecord",
    "SubscriptionRegistry",
    "HandlerTable",
    "ServerMessageBus",
    "ClientMessageBus",
    "ConnectionState",
    "ProcessSupervisor",
    "SupervisorState",
    "ClientService",
    "Emulator",
    "MessageRouter",
    "ClientRequestService",
    "DevServer",
    "DevConfig",
    "load_config",
]

__version__ = "0.1.0"
