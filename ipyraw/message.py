"Immutable kernel protocol messages and request builders."
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

PROTOCOL_VERSION = "5.3"
CHANNELS = ("shell", "control", "iopub", "stdin", "heartbeat")


def new_id()->str: return uuid.uuid4().hex


def _date_str(value)->str:
    if value is None: return ""
    if isinstance(value, datetime): return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class Header:
    msg_id:str
    msg_type:str
    session:str = ""
    username:str = "user"
    version:str = PROTOCOL_VERSION
    date:str = ""

    @classmethod
    def from_dict(cls, d: dict|None)->"Header|None":
        "Build a Header from a wire header dict; empty or missing headers map to None."
        if not isinstance(d, dict) or not d.get("msg_id"): return None
        return cls(msg_id=str(d["msg_id"]), msg_type=str(d.get("msg_type", "")), session=str(d.get("session", "")),
            username=str(d.get("username", "")), version=str(d.get("version", "")), date=_date_str(d.get("date")))

    def to_dict(self)->dict:
        return dict(msg_id=self.msg_id, msg_type=self.msg_type, session=self.session, username=self.username,
            version=self.version, date=self.date)


@dataclass(frozen=True)
class Message:
    "One protocol message on `channel`; `content` and `metadata` are treated as read-only."
    channel:str
    header: Header
    parent_header: Header|None = None
    metadata: dict = field(default_factory=dict)
    content: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.channel not in CHANNELS: raise ValueError(f"unknown channel {self.channel!r}")

    @property
    def msg_type(self)->str: return self.header.msg_type

    @property
    def msg_id(self)->str: return self.header.msg_id

    @property
    def parent_id(self)->str|None: return None if self.parent_header is None else self.parent_header.msg_id

    def with_session(self, session:str)->"Message":
        "Return a copy stamped with `session`, unless a session is already set."
        if self.header.session: return self
        return replace(self, header=replace(self.header, session=session))

    def to_dict(self)->dict:
        return dict(channel=self.channel, header=self.header.to_dict(),
            parent_header={} if self.parent_header is None else self.parent_header.to_dict(),
            metadata=dict(self.metadata), content=dict(self.content))

    @classmethod
    def from_dict(cls, d: dict, channel:str|None=None)->"Message":
        "Build a Message from a decoded wire dict, as returned by `jupyter_client.session.Session.recv`."
        header = Header.from_dict(d.get("header"))
        if header is None: raise ValueError("message has no header")
        for key in ("parent_header", "metadata", "content"):
            if not isinstance(d.get(key) or {}, dict): raise ValueError(f"{key} is not a mapping")
        return cls(channel=channel or d.get("channel") or "shell", header=header,
            parent_header=Header.from_dict(d.get("parent_header")), metadata=dict(d.get("metadata") or {}),
            content=dict(d.get("content") or {}))


def new_message(msg_type:str, channel:str = "shell", content: dict|None=None, session:str = "",
    username:str = "user", parent: Message|None=None, metadata: dict|None=None)->Message:
    "Create an outbound message with a fresh `msg_id` and the current UTC date."
    header = Header(msg_id=new_id(), msg_type=msg_type, session=session, username=username,
        date=datetime.now(timezone.utc).isoformat())
    return Message(channel=channel, header=header, parent_header=None if parent is None else parent.header,
        metadata=metadata or {}, content=content or {})


def execute_request(code:str, silent: bool = False, store_history: bool = False, **kwargs)->Message:
    content = dict(code=code, silent=silent, store_history=store_history, user_expressions={}, allow_stdin=False,
        stop_on_error=True)
    return new_message("execute_request", "shell", content, **kwargs)


def inspect_request(code:str, cursor_pos:int|None=None, detail_level:int = 1, **kwargs)->Message:
    cursor_pos = len(code) if cursor_pos is None else cursor_pos
    return new_message("inspect_request", "shell", dict(code=code, cursor_pos=cursor_pos, detail_level=detail_level), **kwargs)


def complete_request(code:str, cursor_pos:int|None=None, **kwargs)->Message:
    cursor_pos = len(code) if cursor_pos is None else cursor_pos
    return new_message("complete_request", "shell", dict(code=code, cursor_pos=cursor_pos), **kwargs)


def kernel_info_request(**kwargs)->Message: return new_message("kernel_info_request", "shell", {}, **kwargs)


def shutdown_request(restart: bool = False, **kwargs)->Message:
    return new_message("shutdown_request", "control", dict(restart=restart), **kwargs)


def interrupt_request(**kwargs)->Message: return new_message("interrupt_request", "control", {}, **kwargs)
