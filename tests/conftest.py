import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest


def paint_squares(shape, squares, value=200, dtype=np.uint8):
    """squares: iterable of (row, col, height, width) painted with `value` on zeros."""
    img = np.zeros(shape, dtype=dtype)
    for r, c, h, w in squares:
        img[r:r + h, c:c + w] = value
    return img


@pytest.fixture
def square_10x10():
    # one 3x3 nucleus centred at (4, 4)
    return paint_squares((10, 10), [(3, 3, 3, 3)])
