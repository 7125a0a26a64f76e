"""
Google Drive application-data REST client

Talks to the Drive v3 REST API directly with `requests`. Only one file is
ever involved: `music-stats.json` inside the hidden appDataFolder space, which
the drive.appdata scope grants access to without exposing the user's files.

Uploads use the multipart/related layout required by the upload endpoint:
a JSON metadata part followed by a JSON content part, separated by a boundary
token derived from the current time.
"""

import json
import urllib.parse
from typing import Any, Dict, Optional, Tuple

import requests

from ..exceptions import TransportError
from ..utils.helpers import now_ms, truncate_string
from ..utils.logger import get_logger

logger = get_logger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
DRIVE_FILE_NAME = "music-stats.json"
APP_DATA_FOLDER = "appDataFolder"


def build_multipart_body(
    metadata: Dict[str, Any],
    content: str,
    boundary: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Build a multipart/related upload body

    Args:
        metadata: Drive file metadata (name, parents)
        content: File content (the export JSON)
        boundary: Boundary token, defaults to "ytm-<hex epoch ms>"

    Returns:
        Tuple of (boundary, payload)
    """
    boundary = boundary or f"ytm-{now_ms():x}"
    payload = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata, separators=(',', ':'))}\r\n"
        f"--{boundary}\r\n"
        "Content-Type: application/json\r\n\r\n"
        f"{content}\r\n"
        f"--{boundary}--"
    )
    return boundary, payload


class DriveClient:
    """
    Minimal Drive client for the stats file

    Attributes:
        session: requests.Session (or compatible) used for every call
        file_name: Name of the file in appDataFolder
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        file_name: str = DRIVE_FILE_NAME,
        timeout: int = 30,
    ):
        self.session = session or requests.Session()
        self.file_name = file_name
        self.timeout = timeout

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {'Authorization': f'Bearer {access_token}'}

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportError(
                f"Google Drive request failed: {e}",
                details={'method': method, 'url': url, 'original_error': str(e)},
            )

    def find_file(self, access_token: str) -> Optional[Dict[str, Any]]:
        """
        Look up the stats file in appDataFolder

        Returns:
            File resource {id, name, modifiedTime}, or None when absent or
            when the listing is refused
        """
        query = urllib.parse.quote(f"name='{self.file_name}' and trashed=false", safe="!*'()")
        url = (
            f"{DRIVE_API_URL}/files?spaces={APP_DATA_FOLDER}"
            f"&fields=files(id,name,modifiedTime)&q={query}"
        )
        response = self._request('GET', url, headers=self._auth_headers(access_token))
        if not response.ok:
            logger.warning(f"Drive file listing failed with HTTP {response.status_code}")
            return None

        files = (response.json() or {}).get('files') or []
        return files[0] if files else None

    def download_file(self, access_token: str, file_id: str) -> Optional[str]:
        """
        Download the stats file content

        Returns:
            File text, or None when the file cannot be fetched
        """
        url = f"{DRIVE_API_URL}/files/{file_id}?alt=media"
        try:
            response = self._request('GET', url, headers=self._auth_headers(access_token))
        except TransportError as e:
            logger.warning(f"Drive download failed: {e.message}")
            return None
        if not response.ok:
            logger.warning(f"Drive download of {file_id} failed with HTTP {response.status_code}")
            return None
        return response.text

    def create_file(self, access_token: str, content: str) -> Dict[str, Any]:
        """
        Create the stats file in appDataFolder

        Returns:
            Created file resource (contains `id`)

        Raises:
            TransportError: On network failure or non-2xx response
        """
        metadata = {'name': self.file_name, 'parents': [APP_DATA_FOLDER]}
        response = self._upload('POST', f"{DRIVE_UPLOAD_URL}/files?uploadType=multipart", access_token, metadata, content)
        if not response.ok:
            raise TransportError(
                "Failed to create Drive file.",
                details={'status_code': response.status_code, 'body': truncate_string(response.text or '', 300)},
            )
        return response.json()

    def update_file(self, access_token: str, file_id: str, content: str) -> None:
        """
        Replace the stats file content

        Raises:
            TransportError: On network failure or non-2xx response
        """
        metadata = {'name': self.file_name}
        url = f"{DRIVE_UPLOAD_URL}/files/{file_id}?uploadType=multipart"
        response = self._upload('PATCH', url, access_token, metadata, content)
        if not response.ok:
            raise TransportError(
                "Failed to upload Drive file.",
                details={'status_code': response.status_code, 'body': truncate_string(response.text or '', 300)},
            )

    def _upload(self, method: str, url: str, access_token: str, metadata: Dict[str, Any], content: str):
        boundary, payload = build_multipart_body(metadata, content)
        headers = self._auth_headers(access_token)
        headers['Content-Type'] = f'multipart/related; boundary={boundary}'
        return self._request(method, url, headers=headers, data=payload.encode('utf-8'))
