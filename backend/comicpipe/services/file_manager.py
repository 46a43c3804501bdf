"""
File management service for comicpipe.

Handles generated artwork storage with path traversal protection.
Creates per-project directories with subdirectories for character
reference sheets and panel images.
"""
import re
import uuid
from pathlib import Path

from comicpipe.config import settings

ASSET_NAME_PATTERN = re.compile(r"^[\w.-]+$")


class FileManager:
    """
    Manage filesystem artifacts for comic projects.

    Creates structured directories:
    - {base_dir}/{project_id}/characters/ - Character reference images and the style anchor
    - {base_dir}/{project_id}/panels/ - Panel artwork

    Assets are addressed by bare filename; the subdirectory is derived from
    the filename prefix so that URLs never carry path separators.
    """

    def __init__(self, base_dir: str | Path | None = None):
        """
        Initialize FileManager with base directory.

        Args:
            base_dir: Root directory for all project artifacts.
                     If None, uses settings.storage.tmp_dir
        """
        if base_dir is None:
            base_dir = settings.storage.tmp_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def get_project_dir(self, project_id: uuid.UUID) -> Path:
        """
        Get or create project directory with subdirectories.

        Raises:
            ValueError: If project_id creates path outside base_dir (traversal attack)
        """
        project_dir = (self.base_dir / str(project_id)).resolve()

        if not project_dir.is_relative_to(self.base_dir):
            raise ValueError("Invalid project path")

        project_dir.mkdir(exist_ok=True)
        (project_dir / "characters").mkdir(exist_ok=True)
        (project_dir / "panels").mkdir(exist_ok=True)

        return project_dir

    @staticmethod
    def character_filename(handle: str, view: str = "front") -> str:
        return f"character_{handle.lstrip('@')}_{view}.png"

    @staticmethod
    def style_anchor_filename() -> str:
        return "style_anchor.png"

    @staticmethod
    def panel_filename(page_number: int, panel_index: int) -> str:
        return f"panel_p{page_number}_{panel_index}.png"

    @staticmethod
    def asset_url(project_id: uuid.UUID, filename: str) -> str:
        """Public URL under which the API serves an asset."""
        return f"/api/projects/{project_id}/assets/{filename}"

    def _subdir(self, filename: str) -> str:
        return "characters" if filename.startswith(("character_", "style_")) else "panels"

    def resolve_asset(self, project_id: uuid.UUID, filename: str) -> Path:
        """
        Path of an asset file.

        Raises:
            ValueError: If filename is malformed or escapes the project directory
        """
        if not ASSET_NAME_PATTERN.match(filename) or filename.startswith("."):
            raise ValueError("Invalid asset name")
        project_dir = self.get_project_dir(project_id)
        filepath = (project_dir / self._subdir(filename) / filename).resolve()
        if not filepath.is_relative_to(project_dir):
            raise ValueError("Invalid asset path")
        return filepath

    def save_asset(self, project_id: uuid.UUID, filename: str, data: bytes) -> Path:
        """Write (or overwrite) an asset. Re-running a stage reuses filenames."""
        filepath = self.resolve_asset(project_id, filename)
        filepath.write_bytes(data)
        return filepath

    def read_asset(self, project_id: uuid.UUID, filename: str) -> bytes | None:
        filepath = self.resolve_asset(project_id, filename)
        if not filepath.is_file():
            return None
        return filepath.read_bytes()
