from importlib.metadata import PackageNotFoundError, version
from .bus import ChannelBus, Subscription
from .client import RawKernel, start_kernel, execute_result, stream_text
from .connection import Connection, ConnectionInfo, ConnectError, ConnectionClosed
from .correlator import Correlator, RequestTimeout, reply_type_for, find_reply, filter_messages
from .message import Message, Header, new_message
from .process import KernelProcess

try:
    __version__ = version("ipyraw")
except PackageNotFoundError:  # pragma: no cover - local editable without metadata
    __version__ = "0.0.0+local"

__all__ = ["ChannelBus", "Subscription", "RawKernel", "start_kernel", "execute_result", "stream_text", "Connection",
    "ConnectionInfo", "ConnectError", "ConnectionClosed", "Correlator", "RequestTimeout", "reply_type_for", "find_reply",
    "filter_messages", "Message", "Header", "new_message", "KernelProcess", "__version__"]
