"""Save, restore, publish and clean orchestration."""

from artefactor.sync.clean import clean
from artefactor.sync.publish import (
    PublishedImage,
    PublishReport,
    image_var_exports,
    publish,
    publish_image,
)
from artefactor.sync.restore import (
    RestoreManifest,
    RestoreReport,
    find_home_repo,
    plan_restore,
    read_saved_dir,
    restore,
)
from artefactor.sync.save import SAVE_DIR_META, SaveOrchestrator, SaveReport, running_platform, save

__all__ = [
    "SAVE_DIR_META",
    "PublishReport",
    "PublishedImage",
    "RestoreManifest",
    "RestoreReport",
    "SaveOrchestrator",
    "SaveReport",
    "clean",
    "find_home_repo",
    "image_var_exports",
    "plan_restore",
    "publish",
    "publish_image",
    "read_saved_dir",
    "restore",
    "running_platform",
    "save",
]
