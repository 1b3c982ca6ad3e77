"""
JSON input/output.

Scene graphs, checkerboard detections, feature tracks and candidate pairs
are exchanged as JSON files. Loaders return the dataclasses of
calistrap.types; scenes are written atomically.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path

import numpy as np

from .errors import InsufficientDataError
from .types import (
    BoardDetection,
    CameraModel,
    Intrinsics,
    Landmark,
    Observation,
    Pose,
    ReconstructedPair,
    SceneGraph,
    Track,
    TrackItem,
    View,
    create_intrinsics,
)

logger = logging.getLogger(__name__)

SCENE_VERSION = 1
PAIRS_FILE_PATTERN = re.compile(r"pairs_([0-9]+)\.json")


# ============================================================================
# Scene Graph
# ============================================================================


def _intrinsics_to_dict(intrinsic_id: int, intrinsics: Intrinsics) -> dict:
    return {
        "intrinsicId": intrinsic_id,
        "type": intrinsics.model.value,
        "width": intrinsics.width,
        "height": intrinsics.height,
        "focalLength": [intrinsics.fx, intrinsics.fy],
        "skew": intrinsics.skew,
        "principalPoint": intrinsics.principal_point.tolist(),
        "distortionParams": intrinsics.distortion.tolist(),
        "locked": intrinsics.locked,
    }


def _intrinsics_from_dict(data: dict) -> Intrinsics:
    fx, fy = data["focalLength"]
    distortion = data.get("distortionParams")
    return create_intrinsics(
        CameraModel(data["type"]),
        width=int(data["width"]),
        height=int(data["height"]),
        fx=float(fx),
        fy=float(fy),
        principal_point=tuple(data["principalPoint"]),
        skew=float(data.get("skew", 0.0)),
        distortion=None if distortion is None else np.array(distortion, dtype=np.float64),
        locked=bool(data.get("locked", False)),
    )


def scene_to_dict(scene: SceneGraph) -> dict:
    """
    Convert a scene graph to its JSON representation.
    """
    views = []
    for view_id in sorted(scene.views):
        view = scene.views[view_id]
        views.append({
            "viewId": view.view_id,
            "intrinsicId": view.intrinsic_id,
            "poseId": view.pose_key,
            "width": view.width,
            "height": view.height,
            "path": view.image_path,
        })

    poses = []
    for pose_id in sorted(scene.poses):
        pose = scene.poses[pose_id]
        poses.append({
            "poseId": pose_id,
            "rotation": pose.rotation.ravel().tolist(),
            "translation": pose.translation.tolist(),
            "locked": pose.locked,
        })

    landmarks = []
    for landmark_id in sorted(scene.landmarks):
        landmark = scene.landmarks[landmark_id]
        landmarks.append({
            "landmarkId": landmark_id,
            "descType": landmark.desc_type,
            "X": np.asarray(landmark.X, dtype=np.float64).tolist(),
            "observations": [
                {
                    "viewId": view_id,
                    "x": np.asarray(obs.x, dtype=np.float64).tolist(),
                    "featureId": obs.feature_id,
                    "weight": obs.weight,
                }
                for view_id, obs in sorted(landmark.observations.items())
            ],
        })

    return {
        "version": SCENE_VERSION,
        "views": views,
        "intrinsics": [
            _intrinsics_to_dict(intrinsic_id, scene.intrinsics[intrinsic_id])
            for intrinsic_id in sorted(scene.intrinsics)
        ],
        "poses": poses,
        "landmarks": landmarks,
    }


def scene_from_dict(data: dict) -> SceneGraph:
    """
    Build a scene graph from its JSON representation.

    Raises:
        ValueError: Unsupported version or malformed entries
    """
    version = data.get("version", SCENE_VERSION)
    if version != SCENE_VERSION:
        raise ValueError(f"Unsupported scene version: {version}")

    scene = SceneGraph()

    for entry in data.get("views", []):
        view_id = int(entry["viewId"])
        pose_id = entry.get("poseId")
        scene.views[view_id] = View(
            view_id=view_id,
            intrinsic_id=int(entry["intrinsicId"]),
            width=int(entry["width"]),
            height=int(entry["height"]),
            pose_id=None if pose_id is None else int(pose_id),
            image_path=entry.get("path", ""),
        )

    for entry in data.get("intrinsics", []):
        scene.intrinsics[int(entry["intrinsicId"])] = _intrinsics_from_dict(entry)

    for entry in data.get("poses", []):
        scene.poses[int(entry["poseId"])] = Pose(
            rotation=np.array(entry["rotation"], dtype=np.float64).reshape(3, 3),
            translation=np.array(entry["translation"], dtype=np.float64),
            locked=bool(entry.get("locked", False)),
        )

    for index, entry in enumerate(data.get("landmarks", [])):
        landmark_id = int(entry.get("landmarkId", index))
        observations = {}
        for obs in entry.get("observations", []):
            observations[int(obs["viewId"])] = Observation(
                x=np.array(obs["x"], dtype=np.float64),
                feature_id=int(obs["featureId"]),
                weight=float(obs.get("weight", 1.0)),
            )
        scene.landmarks[landmark_id] = Landmark(
            X=np.array(entry["X"], dtype=np.float64),
            observations=observations,
            desc_type=entry.get("descType", "unknown"),
        )

    return scene


def load_scene(path: Path) -> SceneGraph:
    with open(path) as f:
        data = json.load(f)
    scene = scene_from_dict(data)
    logger.info(
        "Loaded scene %s: %d views, %d intrinsics, %d poses, %d landmarks",
        path, len(scene.views), len(scene.intrinsics),
        len(scene.poses), len(scene.landmarks),
    )
    return scene


def save_scene(scene: SceneGraph, path: Path) -> None:
    """
    Write a scene graph to JSON.

    The file is written next to its destination and moved into place, so a
    previous file at path is either fully replaced or left untouched.

    Args:
        scene: Scene to save
        path: Destination .json file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = scene_to_dict(scene)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise

    logger.info("Saved scene to %s", path)


# ============================================================================
# Board Detections
# ============================================================================


def board_detection_from_dict(data: dict) -> BoardDetection:
    corners = np.array(
        [corner["center"] for corner in data.get("corners", [])],
        dtype=np.float64,
    ).reshape(-1, 2)
    boards = tuple(
        np.array(board, dtype=np.int64).reshape(len(board), -1)
        for board in data.get("boards", [])
        if len(board) > 0
    )
    return BoardDetection(corners=corners, boards=boards)


def load_board_detections(
    directory: Path,
    view_ids: list[int],
) -> dict[int, BoardDetection]:
    """
    Load checkerboard detections of the given views.

    Each view's detections are read from checkers_<viewId>.json; views
    without a file are skipped with a warning.

    Args:
        directory: Folder holding the detection files
        view_ids: Views to look up

    Returns:
        view_id -> BoardDetection
    """
    directory = Path(directory)
    detections = {}

    for view_id in view_ids:
        path = directory / f"checkers_{view_id}.json"
        if not path.is_file():
            logger.warning("No checkerboard detection for view %d (%s)", view_id, path)
            continue
        with open(path) as f:
            detections[view_id] = board_detection_from_dict(json.load(f))

    logger.info("Loaded checkerboard detections for %d views", len(detections))
    return detections


# ============================================================================
# Tracks and Candidate Pairs
# ============================================================================


def tracks_from_dict(data: dict) -> dict[int, Track]:
    tracks = {}
    for track_id, entry in data.items():
        items = {}
        for view_id, feature in entry.get("featPerView", {}).items():
            feature_id = feature.get("featureId")
            items[int(view_id)] = TrackItem(
                coords=np.array(feature["coords"], dtype=np.float64),
                scale=float(feature.get("scale", 1.0)),
                feature_id=None if feature_id is None else int(feature_id),
            )
        tracks[int(track_id)] = Track(
            desc_type=entry.get("descType", "unknown"),
            items=items,
        )
    return tracks


def load_tracks(path: Path) -> dict[int, Track]:
    with open(path) as f:
        tracks = tracks_from_dict(json.load(f))
    logger.info("Loaded %d tracks from %s", len(tracks), path)
    return tracks


def pair_from_dict(data: dict) -> ReconstructedPair:
    rotation = np.array(data["rotation"], dtype=np.float64).ravel()
    translation = np.array(data["translation"], dtype=np.float64).ravel()
    if rotation.size != 9 or translation.size != 3:
        raise ValueError(
            f"Pair ({data.get('reference')}, {data.get('next')}): expected 9 "
            f"rotation and 3 translation values, got {rotation.size} and "
            f"{translation.size}"
        )
    return ReconstructedPair(
        reference=int(data["reference"]),
        next=int(data["next"]),
        rotation=rotation.reshape(3, 3),
        translation=translation,
    )


def load_pairs(directory: Path) -> list[ReconstructedPair]:
    """
    Load candidate pairs from every pairs_<n>.json file in a folder.

    Files are read in ascending n and their pairs concatenated in file order.
    Other files are ignored.

    Raises:
        InsufficientDataError: The folder holds no pairs file
    """
    directory = Path(directory)

    files = []
    for path in directory.iterdir():
        match = PAIRS_FILE_PATTERN.fullmatch(path.name)
        if match and path.is_file():
            files.append((int(match.group(1)), path))
    files.sort()

    if not files:
        raise InsufficientDataError(f"No pairs_<n>.json file in {directory}")

    pairs = []
    for _, path in files:
        with open(path) as f:
            pairs.extend(pair_from_dict(entry) for entry in json.load(f))

    logger.info("Loaded %d candidate pairs from %d files", len(pairs), len(files))
    return pairs
