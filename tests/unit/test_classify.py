"""Unit tests for view classification and pose eligibility rules."""

import pytest

from repose_worker.queue.classify import (
    ViewClass,
    classify_item,
    classify_view,
    eligible_poses,
    shot_types_for,
)
from repose_worker.queue.records import ShotType


class TestClassifyView:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("front", ViewClass.FRONT),
            ("FRONT", ViewClass.FRONT),
            ("https://cdn.example.com/look_f.jpg", ViewClass.FRONT),
            ("look_ff_01.png", ViewClass.FRONT),
            ("look_fc_01.png", ViewClass.FRONT),
            ("back", ViewClass.BACK),
            ("https://cdn.example.com/look_b.jpg", ViewClass.BACK),
            ("detail", ViewClass.DETAIL),
            ("close-up", ViewClass.DETAIL),
            ("side", ViewClass.UNKNOWN),
            ("", ViewClass.UNKNOWN),
            (None, ViewClass.UNKNOWN),
        ],
    )
    def test_classifies_view_text(self, text, expected) -> None:
        assert classify_view(text) is expected

    def test_back_wins_over_later_patterns(self) -> None:
        assert classify_view("look_back_detail_front.jpg") is ViewClass.BACK

    def test_detail_wins_over_front(self) -> None:
        assert classify_view("front_detail.jpg") is ViewClass.DETAIL

    def test_falls_back_to_source_url_when_view_is_inconclusive(self) -> None:
        assert classify_item("side", "https://cdn.example.com/shirt_back.jpg") is ViewClass.BACK
        assert classify_item("back", "https://cdn.example.com/shirt_front.jpg") is ViewClass.BACK

    def test_unknown_maps_to_front_triple(self) -> None:
        assert shot_types_for(ViewClass.UNKNOWN) == [
            ShotType.FRONT_FULL, ShotType.FRONT_CROPPED, ShotType.DETAIL,
        ]
        assert shot_types_for(ViewClass.BACK) == [ShotType.BACK_FULL]
        assert shot_types_for(ViewClass.DETAIL) == [ShotType.DETAIL]


class TestEligiblePoses:
    def test_front_cropped_trousers_only_takes_slot_b_trousers(self, pose_factory) -> None:
        poses = [
            pose_factory("b-trousers", "B", "trousers"),
            pose_factory("b-top", "B", "top"),
            pose_factory("a-trousers", "A", "trousers"),
        ]
        chosen, widened = eligible_poses(poses, ShotType.FRONT_CROPPED, "trousers")
        assert [p.id for p in chosen] == ["b-trousers"]
        assert widened is False

    def test_widens_to_whole_slot_when_no_product_match(self, pose_factory) -> None:
        poses = [
            pose_factory("b-top-1", "B", "top"),
            pose_factory("b-top-2", "B", "tops"),
            pose_factory("a-top", "A", "top"),
        ]
        chosen, widened = eligible_poses(poses, ShotType.FRONT_CROPPED, "trousers")
        assert sorted(p.id for p in chosen) == ["b-top-1", "b-top-2"]
        assert widened is True

    def test_non_trousers_looks_use_top_poses(self, pose_factory) -> None:
        poses = [
            pose_factory("d-top", "D", "tops"),
            pose_factory("d-trousers", "D", "trousers"),
        ]
        chosen, _ = eligible_poses(poses, ShotType.DETAIL, "dress")
        assert [p.id for p in chosen] == ["d-top"]

    def test_full_shots_ignore_product_type(self, pose_factory) -> None:
        poses = [
            pose_factory("a-trousers", "A", "trousers"),
            pose_factory("a-top", "a", "top"),
            pose_factory("c-top", "C", "top"),
        ]
        chosen, widened = eligible_poses(poses, ShotType.FRONT_FULL, "trousers")
        assert sorted(p.id for p in chosen) == ["a-top", "a-trousers"]
        assert widened is False

        chosen, _ = eligible_poses(poses, ShotType.BACK_FULL, "top")
        assert [p.id for p in chosen] == ["c-top"]
