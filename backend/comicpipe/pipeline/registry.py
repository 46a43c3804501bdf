"""The production set of stage workers."""

from typing import Optional

from comicpipe.config import Settings, settings
from comicpipe.pipeline.analyze import AnalyzeStoryWorker
from comicpipe.pipeline.base import StageRegistry
from comicpipe.pipeline.characters import CharactersWorker
from comicpipe.pipeline.designs import DesignsWorker
from comicpipe.pipeline.dialogue import DialogueWorker
from comicpipe.pipeline.finalize import FinalizeWorker
from comicpipe.pipeline.layouts import LayoutsWorker
from comicpipe.pipeline.panels import PanelsWorker
from comicpipe.pipeline.script import ScriptWorker
from comicpipe.services.file_manager import FileManager


def default_registry(config: Optional[Settings] = None) -> StageRegistry:
    """Registry with one worker per stage, sharing a FileManager.

    Model clients are created lazily by the workers on first use.
    """
    config = config or settings
    file_manager = FileManager(config.storage.tmp_dir)
    return StageRegistry([
        AnalyzeStoryWorker(),
        ScriptWorker(config=config.pipeline),
        CharactersWorker(),
        DesignsWorker(file_manager=file_manager, config=config.pipeline),
        LayoutsWorker(config=config.pipeline),
        PanelsWorker(file_manager=file_manager, config=config.pipeline),
        DialogueWorker(file_manager=file_manager, config=config.pipeline),
        FinalizeWorker(),
    ])
