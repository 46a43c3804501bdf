"""Asset storage: naming, traversal protection and read/write."""

import uuid

import pytest

from comicpipe.services.file_manager import FileManager

from conftest import FAKE_PNG


@pytest.fixture
def file_manager(tmp_path):
    return FileManager(tmp_path)


def test_asset_names_and_urls():
    project_id = uuid.UUID("00000000-0000-0000-0000-000000000001")
    assert FileManager.character_filename("@miravale") == "character_miravale_front.png"
    assert FileManager.panel_filename(2, 3) == "panel_p2_3.png"
    assert FileManager.style_anchor_filename() == "style_anchor.png"
    assert FileManager.asset_url(project_id, "panel_p2_3.png") == (
        "/api/projects/00000000-0000-0000-0000-000000000001/assets/panel_p2_3.png"
    )


def test_project_dir_layout(file_manager, tmp_path):
    project_id = uuid.uuid4()
    project_dir = file_manager.get_project_dir(project_id)
    assert project_dir == (tmp_path / str(project_id)).resolve()
    assert (project_dir / "characters").is_dir()
    assert (project_dir / "panels").is_dir()


def test_save_and_read_asset(file_manager):
    project_id = uuid.uuid4()
    character = file_manager.save_asset(project_id, "character_tobin_front.png", FAKE_PNG)
    panel = file_manager.save_asset(project_id, "panel_p1_0.png", FAKE_PNG)
    anchor = file_manager.save_asset(project_id, FileManager.style_anchor_filename(), FAKE_PNG)

    assert character.parent.name == "characters"
    assert panel.parent.name == "panels"
    assert anchor.parent.name == "characters"
    assert file_manager.read_asset(project_id, "panel_p1_0.png") == FAKE_PNG

    # Overwrites in place when a stage is re-run
    file_manager.save_asset(project_id, "panel_p1_0.png", b"new")
    assert file_manager.read_asset(project_id, "panel_p1_0.png") == b"new"


def test_missing_asset_reads_none(file_manager):
    assert file_manager.read_asset(uuid.uuid4(), "panel_p9_9.png") is None


@pytest.mark.parametrize("filename", [
    "../secret.png",
    "..",
    ".hidden.png",
    "panels/panel_p1_0.png",
    "bad name.png",
    "",
])
def test_rejects_unsafe_asset_names(file_manager, filename):
    with pytest.raises(ValueError):
        file_manager.resolve_asset(uuid.uuid4(), filename)


def test_rejects_project_dir_escape(file_manager):
    with pytest.raises(ValueError):
        file_manager.get_project_dir("../outside")
