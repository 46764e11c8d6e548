"Debug and configuration helpers for ipyraw: env parsing, tiered logging and faulthandler support."
import faulthandler, logging, os, signal, sys
from fastcore.basics import str2bool

def envbool(name: str, default: bool = False)->bool:
    v = (os.environ.get(name) or "").strip()
    if not v: return default
    try: return bool(str2bool(v))
    except ValueError: return default

def envfloat(name: str, default: float|None)->float|None:
    "Return float env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None or not raw.strip(): return default
    try: return float(raw)
    except ValueError: return default

enabled = envbool("IPYRAW_DEBUG")
trace_msgs = envbool("IPYRAW_DEBUG_MSGS")

def setup():
    "Initialize debug infrastructure: logging, faulthandler, SIGUSR1 handler."
    if not enabled: return
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.DEBUG, stream=sys.__stderr__,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def tlog(log, prefix: str, msg):
    "Log message flow at high level: channel, msg_type, msg_id, parent id."
    if not trace_msgs: return
    h = msg.header
    parent = msg.parent_header.msg_id if msg.parent_header is not None else None
    log.warning("%s chan=%s type=%s id=%s parent=%s", prefix, msg.channel, h.msg_type, h.msg_id, parent)
