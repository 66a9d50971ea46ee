"""Client-facing fetch path of the configuration server."""

import sys
import threading
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..errors import ConfigStoreUnavailable
from .store import ConfigDocument, FileConfigStore, parse_profiles


class ConfigService:
    """Fetches merged documents and remembers the last good one per triple.

    When the store is unavailable the retryable error propagates, unless
    *serve_stale* is set and a previous document exists; that document is
    then returned with ``stale=True``.
    """

    def __init__(self, store: FileConfigStore, serve_stale: bool = False):
        self.store = store
        self.serve_stale = serve_stale
        self._lock = threading.Lock()
        self._last_good: Dict[Tuple[str, Tuple[str, ...], str], ConfigDocument] = {}

    @property
    def default_label(self) -> str:
        return self.store.default_label

    def labels(self) -> List[str]:
        return self.store.labels()

    def _key(self, application: str, profile: Optional[str],
             label: Optional[str]) -> Tuple[str, Tuple[str, ...], str]:
        return application, parse_profiles(profile), label or self.store.default_label

    def fetch(self, application: str, profile: Optional[str] = None,
              label: Optional[str] = None) -> ConfigDocument:
        key = self._key(application, profile, label)
        try:
            doc = self.store.load(application, profile, label)
        except ConfigStoreUnavailable as exc:
            if not self.serve_stale:
                raise
            with self._lock:
                cached = self._last_good.get(key)
            if cached is None:
                raise
            print(
                f"[config] store unavailable ({exc}); serving stale"
                f" {application}/{cached.profile}@{cached.label} version {cached.version[:12]}",
                file=sys.stderr,
            )
            return replace(cached, stale=True)

        with self._lock:
            self._last_good[key] = doc
        return doc

    def publish(self, application: str, profile: str, properties: Mapping[str, Any],
                label: Optional[str] = None) -> str:
        return self.store.publish(application, profile, properties, label)
