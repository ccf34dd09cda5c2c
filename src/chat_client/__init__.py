"""Chat client core for agent servers that speak the line-framed stream protocol.

The package decodes streamed agent replies, extracts previewable artifacts,
normalises stored history, and manages thread lifecycle against the remote
memory API. A small FastAPI bridge (see :func:`create_app`) exposes one
conversation to a local UI.

Typical usage
-------------
from chat_client import ConversationManager, load_config
manager = ConversationManager.from_config(load_config())

or, from the provided launchers:

python scripts/run_bridge.py --host 127.0.0.1 --port 8765
python scripts/chat_repl.py
"""

from __future__ import annotations

__all__ = [
    "Artifact",
    "ChatMessage",
    "ConversationManager",
    "FrameDecoder",
    "FrameInterpreter",
    "StreamSession",
    "Thread",
    "__version__",
    "create_app",
    "extract_artifact",
    "get_version",
    "load_config",
    "normalize_history",
    "normalize_message",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


from .artifacts import extract_artifact  # noqa: E402
from .config import load_config  # noqa: E402
from .conversation import ConversationManager  # noqa: E402
from .decoder import FrameDecoder  # noqa: E402
from .interpreter import FrameInterpreter, StreamSession  # noqa: E402
from .models import Artifact, ChatMessage, Thread  # noqa: E402
from .normalizer import normalize_history, normalize_message  # noqa: E402


# ---------------------------------------------------------------------
# App factory export
# ---------------------------------------------------------------------
def create_app(*args, **kwargs):
    """Return a configured FastAPI bridge application.

    This forwards to :func:`chat_client.bridge.create_app`; the web stack is
    only imported when a bridge is actually built.
    """
    from .bridge import create_app as _create_app

    return _create_app(*args, **kwargs)
