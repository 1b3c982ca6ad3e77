"""
Checkerboard grid helpers.

A detected board is a (rows, cols) grid of corner indices; these helpers
turn it into planar object points and pick boards by image position.
"""

from __future__ import annotations

import numpy as np

from ..types import UNDEFINED_INDEX, BoardDetection


def board_cells(board: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Defined cells of a board in row-major order.

    Returns:
        (rows, cols, corner_ids), each (k,)
    """
    board = np.asarray(board)
    rows, cols = np.nonzero(board != UNDEFINED_INDEX)
    return rows, cols, board[rows, cols].astype(np.int64)


def board_corner_count(board: np.ndarray) -> int:
    return int(np.count_nonzero(np.asarray(board) != UNDEFINED_INDEX))


def planar_board_points(
    board: np.ndarray,
    square_size: float,
    centered: bool = False,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Object points of a board on the z = 0 plane.

    Args:
        board: (rows, cols) grid of corner ids
        square_size: Edge length of one square
        centered: Put the origin at grid cell (rows // 2, cols // 2)
            instead of the top-left corner

    Returns:
        (points (k, 3), corner_ids (k,))
    """
    board = np.asarray(board)
    rows, cols, corner_ids = board_cells(board)

    x = cols.astype(np.float64)
    y = rows.astype(np.float64)
    if centered:
        x -= board.shape[1] // 2
        y -= board.shape[0] // 2

    points = np.column_stack([x * square_size, y * square_size, np.zeros(len(x))])
    return points, corner_ids


def min_distance_to(detection: BoardDetection, board: np.ndarray, point: np.ndarray) -> float:
    """
    Smallest distance from point to any defined corner of the board.
    """
    _, _, corner_ids = board_cells(board)
    if len(corner_ids) == 0:
        return np.inf
    diff = detection.corners[corner_ids] - np.asarray(point, dtype=np.float64)
    return float(np.min(np.linalg.norm(diff, axis=1)))


def sort_boards_by_distance(
    detection: BoardDetection,
    point: np.ndarray,
) -> list[np.ndarray]:
    """
    Boards ordered by their closest corner to point (stable for ties).
    """
    distances = [min_distance_to(detection, board, point) for board in detection.boards]
    order = sorted(range(len(distances)), key=lambda k: distances[k])
    return [detection.boards[k] for k in order]
