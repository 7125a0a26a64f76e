"""
Cloud reconciliation package

- drive.py: Google Drive appDataFolder REST client
- merge.py: export parsing, content hashing, bundle merging
- synchronizer.py: the one-pass SyncEngine
"""

from .drive import DriveClient, build_multipart_body
from .merge import content_hash, merge_exports, parse_export
from .synchronizer import SyncAction, SyncEngine, SyncResult

__all__ = [
    'DriveClient',
    'build_multipart_body',
    'content_hash',
    'merge_exports',
    'parse_export',
    'SyncAction',
    'SyncEngine',
    'SyncResult',
]
