"""
Durable State Store - db.json persistence for UTXOs and NWC connections.

Whole-file replace on every save: the snapshot is written to a temp file next
to the target and swapped in with os.replace, so a crash leaves either the old
file or the new one.
"""

import os
import json
import logging
import tempfile
from pathlib import Path

from .state import Snapshot

logger = logging.getLogger("Persistence")


class StateStore:
    def __init__(self, path):
        self.path = Path(path)

    def load(self):
        """Read the snapshot. Missing or unreadable files give an empty one."""
        if not self.path.exists():
            logger.info(f"📂 No state file at {self.path}, starting empty")
            return Snapshot.empty()

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            snapshot = Snapshot.from_dict(data)
        except (json.JSONDecodeError, IOError, ValueError, KeyError, TypeError) as e:
            logger.error(f"❌ Error loading state from {self.path}: {e}")
            return Snapshot.empty()

        logger.info(
            f"📂 Loaded {len(snapshot.utxos)} UTXOs, {len(snapshot.nwc_info)} NWC "
            f"connections from {self.path}"
        )
        return snapshot

    def save(self, snapshot):
        """Atomically overwrite the state file with `snapshot`."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(snapshot.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"💾 Saved {len(snapshot.utxos)} UTXOs to {self.path}")
