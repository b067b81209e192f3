"""View classification and pose-slot rules for run expansion.

Product shots arrive with a loosely structured view tag (or only a source
URL). The classifier checks ordered patterns and the first match wins, so a
URL like ``look_back_detail.jpg`` is a back shot.
"""

from enum import Enum
from typing import Iterable, List, Optional, Tuple

from repose_worker.queue.records import LibraryPose, ShotType


class ViewClass(str, Enum):
    FRONT = "front"
    BACK = "back"
    DETAIL = "detail"
    UNKNOWN = "unknown"


VIEW_PATTERNS: List[Tuple[ViewClass, Tuple[str, ...]]] = [
    (ViewClass.BACK, ("back", "_b.", "_back")),
    (ViewClass.DETAIL, ("detail", "close")),
    (ViewClass.FRONT, ("front", "_f.", "_front", "_ff", "_fc")),
]

FRONT_SHOT_TYPES = [ShotType.FRONT_FULL, ShotType.FRONT_CROPPED, ShotType.DETAIL]

SHOT_TYPES_BY_VIEW = {
    ViewClass.FRONT: FRONT_SHOT_TYPES,
    ViewClass.BACK: [ShotType.BACK_FULL],
    ViewClass.DETAIL: [ShotType.DETAIL],
    # Unlabelled shots are almost always front-facing.
    ViewClass.UNKNOWN: FRONT_SHOT_TYPES,
}

SLOT_BY_SHOT_TYPE = {
    ShotType.FRONT_FULL: "A",
    ShotType.FRONT_CROPPED: "B",
    ShotType.BACK_FULL: "C",
    ShotType.DETAIL: "D",
}

PRODUCT_FILTERED_SHOT_TYPES = {ShotType.FRONT_CROPPED, ShotType.DETAIL}


def classify_view(text: Optional[str]) -> ViewClass:
    """Classify a view tag or source URL."""
    lowered = (text or "").lower()
    if not lowered:
        return ViewClass.UNKNOWN
    for view_class, needles in VIEW_PATTERNS:
        if any(needle in lowered for needle in needles):
            return view_class
    return ViewClass.UNKNOWN


def classify_item(view: Optional[str], source_url: Optional[str]) -> ViewClass:
    """Use the view tag when it is conclusive, else fall back to the URL."""
    view_class = classify_view(view)
    if view_class is ViewClass.UNKNOWN:
        view_class = classify_view(source_url)
    return view_class


def shot_types_for(view_class: ViewClass) -> List[ShotType]:
    return list(SHOT_TYPES_BY_VIEW[view_class])


def desired_pose_product_type(look_product_type: Optional[str]) -> str:
    return "trousers" if (look_product_type or "").lower() == "trousers" else "top"


def _matches_product_type(pose: LibraryPose, desired: str) -> bool:
    pose_type = (pose.product_type or "").lower()
    if desired == "top":
        return pose_type in ("top", "tops")
    return pose_type == desired


def poses_for_slot(poses: Iterable[LibraryPose], shot_type: ShotType) -> List[LibraryPose]:
    slot = SLOT_BY_SHOT_TYPE[shot_type]
    return [p for p in poses if slot in (p.slot or "").upper()]


def eligible_poses(
    poses: Iterable[LibraryPose],
    shot_type: ShotType,
    look_product_type: Optional[str],
) -> Tuple[List[LibraryPose], bool]:
    """Candidate poses for a shot type.

    Returns the candidates and whether the product-type filter had to be
    dropped because no pose in the slot carried a matching tag.
    """
    slot_poses = poses_for_slot(poses, shot_type)
    if shot_type not in PRODUCT_FILTERED_SHOT_TYPES:
        return slot_poses, False

    desired = desired_pose_product_type(look_product_type)
    matching = [p for p in slot_poses if _matches_product_type(p, desired)]
    if matching:
        return matching, False
    return slot_poses, True
