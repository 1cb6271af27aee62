#Filename: host.py
"""
HOST INTERFACE
The outbound calls the agent makes into its host (download control, cookies,
tabs, visible state) and the one persisted user preference.
"""

import json
import logging
import os
from typing import Dict, List, Protocol

from structures import RequestId, TabInfo, VisibleState

logger = logging.getLogger(__name__)

PREF_USER_DISABLED = "userDisabled"


class HostBridge(Protocol):
    """
    Host subsystems the agent does not own. Every call may fail:
    cancel/erase raise DownloadControlError, get_cookies raises
    CookieLookupError, get_tab raises LostTabContextError.
    """
    async def cancel_download(self, download_id: RequestId) -> None: ...
    async def erase_download(self, download_id: RequestId) -> None: ...
    async def get_cookies(self, url: str) -> List[Dict[str, str]]: ...
    async def get_tab(self, tab_id: int) -> TabInfo: ...
    def set_visible_state(self, state: VisibleState, badge: int) -> None: ...


class PreferenceStore:
    """
    Persists the user's monitoring toggle as a small JSON document.
    Read failures degrade to "not disabled"; write failures are logged.
    """
    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)

    def load(self) -> bool:
        """Returns the stored userDisabled flag."""
        if not os.path.exists(self.path):
            return False
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read preferences from %s: %s", self.path, e)
            return False
        return isinstance(data, dict) and data.get(PREF_USER_DISABLED) is True

    def save(self, user_disabled: bool) -> None:
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({PREF_USER_DISABLED: bool(user_disabled)}, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning("Could not persist preferences to %s: %s", self.path, e)
