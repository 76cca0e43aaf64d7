"""
Bilinear splat between the (rd+1) x (rd+1) corner grid and the rd x rd
output cells.

A sample at fractional offset (dx, dy) inside its grid-B cell touches the four
integer positions around it. Instead of interpolating the feature vector of
grid B, the kernels compute exact dot products at integer corners and splat
each of them into the output cells whose four corners include it:

    corner (ix, iy) -> cell (iy-1, ix-1)  weight   dy  *   dx
                    -> cell (iy-1, ix  )  weight   dy  * (1-dx)
                    -> cell (iy,   ix-1)  weight (1-dy)*   dx
                    -> cell (iy,   ix  )  weight (1-dy)*(1-dx)

Cells outside [0, rd-1] are dropped without renormalizing. The forward
splat and the backward un-splat both go through `splat`.
"""


def cell_index(cy, cx, rd):
    """ row-major volume channel of output cell (cy, cx) """
    return cy * rd + cx


def splat_cells(ix, iy, rd):
    """
    Output cells fed by corner (ix, iy).

    Yields (k, oy, ox) where k is the volume channel and (oy, ox) in {0, 1}
    is the offset of the corner from the cell's top-left corner.
    """
    for oy in (1, 0):
        for ox in (1, 0):
            cy, cx = iy - oy, ix - ox
            if 0 <= cy < rd and 0 <= cx < rd:
                yield cell_index(cy, cx, rd), oy, ox


def splat_weight(dx, dy, oy, ox):
    """ weight of a corner at offset (oy, ox) from the cell's top-left corner """
    wy = dy if oy else 1 - dy
    wx = dx if ox else 1 - dx
    return wy * wx


def splat(ix, iy, dx, dy, rd):
    """ (k, weight) pairs of corner (ix, iy); dx, dy may be floats or tensors """
    for k, oy, ox in splat_cells(ix, iy, rd):
        yield k, splat_weight(dx, dy, oy, ox)
