"""Storage for verification photos."""
import os
from datetime import datetime
from werkzeug.utils import secure_filename

class LocalArtifactStore:
    """Writes verification artifacts under a local upload folder."""

    def __init__(self, root: str, base_url: str = '/uploads'):
        self.root = root
        self.base_url = base_url.rstrip('/')

    @classmethod
    def from_app(cls, app) -> 'LocalArtifactStore':
        return cls(app.config.get('UPLOAD_FOLDER', 'uploads'))

    @staticmethod
    def photo_path(session_id: str, student_id: str, extension: str, when: datetime) -> str:
        """attendance_photos/<session>/<student>_<timestamp>.<ext>"""
        return '/'.join([
            'attendance_photos',
            session_id,
            f"{student_id}_{when.strftime('%Y%m%d%H%M%S%f')}.{extension.lower()}"
        ])

    def put(self, data: bytes, path: str) -> str:
        """Store bytes at path and return a reference URL for them."""
        parts = [secure_filename(part) for part in path.split('/') if part]
        if not parts or not all(parts):
            raise ValueError(f"Invalid artifact path: {path!r}")

        target = os.path.join(self.root, *parts)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, 'wb') as fh:
            fh.write(data)

        return f"{self.base_url}/{'/'.join(parts)}"

    def delete(self, ref: str) -> bool:
        """Remove an artifact by the reference put() returned."""
        prefix = f"{self.base_url}/"
        if not ref or not ref.startswith(prefix):
            return False

        parts = [secure_filename(part) for part in ref[len(prefix):].split('/') if part]
        if not parts or not all(parts):
            return False

        try:
            os.remove(os.path.join(self.root, *parts))
        except FileNotFoundError:
            return False
        return True
