import logging
import math

import torch

from .launch import stage_tiles, unstage_tiles, tile_mask
from .splat import splat

logger = logging.getLogger(__name__)

'''
-------------------------------
Tiled correlation (torch)
-------------------------------
Every (batch, tile) work unit of the launch grid is laid out along the leading
[B, TY, TX] dims and its lanes along TA, so one torch op advances all work
units through the same phase. Phases run in program order, which stands in
for the barrier between staging and compute.
'''


def safe_index_add(out, index, src, valid):
    """ out[index[i]] += src[i] for every row i with valid[i], repeated indices accumulate """
    out.index_add_(0, index[valid], src[valid])


def stage_corner(fmap2, bidx, h2, w2, c0, c1, inside):
    """
    Stage channels [c0, c1) of grid B at one corner per lane.

    Args:
        fmap2  : [B, H2, W2, C] target grid
        bidx   : [B, 1, 1, 1] batch index of each work unit
        h2, w2 : [B, TY, TX, TA] integer corner position per lane
        inside : [B, TY, TX, TA] lane maps to a pixel of grid A

    Returns:
        f2    : [B, TY, TX, TA, c1-c0], zero where the corner is outside grid B
        valid : [B, TY, TX, TA]
    """
    _, H2, W2, _ = fmap2.shape
    valid = inside & (h2 >= 0) & (h2 < H2) & (w2 >= 0) & (w2 < W2)

    h2 = h2.clamp(0, H2 - 1)
    w2 = w2.clamp(0, W2 - 1)

    f2 = fmap2[bidx, h2, w2, c0:c1]
    return f2.masked_fill(~valid[..., None], 0), valid


def split_coords(coords_tiles, n):
    """ integer floor and fractional part of the n-th sample coordinate of each lane """
    x = coords_tiles[..., n, 0]
    y = coords_tiles[..., n, 1]

    x0 = torch.floor(x)
    y0 = torch.floor(y)

    return x0.long(), y0.long(), x - x0, y - y0


'''
---------
Forward
---------
'''
def corr_forward_kernel(fmap1, fmap2, coords, corr, radius, launch):
    """
    Accumulate the bilinear-splatted correlation volume into corr.

    Args:
        fmap1  : [B, H1, W1, C] source grid A
        fmap2  : [B, H2, W2, C] target grid B
        coords : [B, N, H1, W1, 2] sample (x, y) in grid-B pixels
        corr   : [B, N, (2r+1)^2, H1, W1] zero-initialized output, updated in place
        radius : int
        launch : LaunchConfig for grid A
    """
    B, H1, W1, _ = fmap1.shape
    _, H2, W2, _ = fmap2.shape
    N = coords.shape[1]
    rd = 2 * radius + 1

    logger.debug("ALTCORR FORWARD torch %s radius=%d", launch, radius)

    # every corner of an empty grid B is outside, corr stays zero
    if H2 == 0 or W2 == 0:
        return

    fmap1_tiles = stage_tiles(fmap1, launch)
    coords_tiles = stage_tiles(coords.permute(0, 2, 3, 1, 4), launch)
    inside = tile_mask(launch, fmap1.device)
    bidx = torch.arange(B, device=fmap1.device).view(B, 1, 1, 1)

    # [B, TY, TX, TA, N, rd*rd]
    acc = fmap1.new_zeros(inside.shape + (N, rd * rd))

    for c0, c1 in launch.channel_groups():
        f1 = fmap1_tiles[..., c0:c1]

        for n in range(N):
            x0, y0, dx, dy = split_coords(coords_tiles, n)

            for iy in range(rd + 1):
                for ix in range(rd + 1):
                    f2, _ = stage_corner(fmap2, bidx,
                        y0 - radius + iy, x0 - radius + ix, c0, c1, inside)

                    s = (f1 * f2).sum(dim=-1)
                    for k, w in splat(ix, iy, dx, dy, rd):
                        acc[..., n, k] += w * s

    acc = unstage_tiles(acc, launch, H1, W1)
    corr += acc.permute(0, 3, 4, 1, 2)


'''
---------
Backward
---------
'''
def corr_backward_kernel(fmap1, fmap2, coords, corr_grad, fmap1_grad, fmap2_grad, radius, launch):
    """
    Accumulate the gradients of the correlation volume w.r.t. both grids.

    Args:
        fmap1, fmap2, coords, radius, launch : as in corr_forward_kernel
        corr_grad  : [B, N, (2r+1)^2, H1, W1] upstream gradient
        fmap1_grad : [B, H1, W1, C] zero-initialized, updated in place
        fmap2_grad : [B, H2, W2, C] zero-initialized contiguous, updated in place

    Grid-A gradient only ever lands on the work unit's own pixels. Grid-B
    gradient of many lanes can alias, so it goes through index_add_.
    """
    B, H1, W1, C = fmap1.shape
    _, H2, W2, _ = fmap2.shape
    N = coords.shape[1]
    rd = 2 * radius + 1

    logger.debug("ALTCORR BACKWARD torch %s radius=%d", launch, radius)

    # every corner of an empty grid B is outside, both gradients stay zero
    if H2 == 0 or W2 == 0:
        return

    fmap1_tiles = stage_tiles(fmap1, launch)
    coords_tiles = stage_tiles(coords.permute(0, 2, 3, 1, 4), launch)
    grad_tiles = stage_tiles(corr_grad.permute(0, 3, 4, 1, 2), launch)
    inside = tile_mask(launch, fmap1.device)
    bidx = torch.arange(B, device=fmap1.device).view(B, 1, 1, 1)

    fmap1_grad_tiles = torch.zeros_like(fmap1_tiles)
    fmap2_grad_flat = fmap2_grad.view(B * H2 * W2, C)

    for c0, c1 in launch.channel_groups():
        f1 = fmap1_tiles[..., c0:c1]
        f1_grad = torch.zeros_like(f1)

        for n in range(N):
            x0, y0, dx, dy = split_coords(coords_tiles, n)

            for iy in range(rd + 1):
                for ix in range(rd + 1):
                    h2 = y0 - radius + iy
                    w2 = x0 - radius + ix
                    f2, valid = stage_corner(fmap2, bidx, h2, w2, c0, c1, inside)

                    # upstream gradient of this corner's dot product
                    g = torch.zeros_like(dx)
                    for k, w in splat(ix, iy, dx, dy, rd):
                        g = g + w * grad_tiles[..., n, k]

                    f1_grad += g[..., None] * f2

                    index = (bidx * H2 + h2.clamp(0, H2 - 1)) * W2 + w2.clamp(0, W2 - 1)
                    safe_index_add(fmap2_grad_flat[:, c0:c1], index, g[..., None] * f1, valid)

        fmap1_grad_tiles[..., c0:c1] = f1_grad

    fmap1_grad += unstage_tiles(fmap1_grad_tiles, launch, H1, W1)


'''
-------------------------------
Reference (per pixel loops)
-------------------------------
'''
def within_bounds(h, w, H, W):
    return (h >= 0) and (h < H) and (w >= 0) and (w < W)


def corr_forward_reference(fmap1, fmap2, coords, radius):
    """
    Loop-by-loop reference of the forward pass, slow but obvious.

    Computes the (rd+1) x (rd+1) integer corner correlations of every pixel
    and bilinearly interpolates neighbouring corners into the rd x rd cells.

    Args:
        fmap1  : [B, H1, W1, C]
        fmap2  : [B, H2, W2, C]
        coords : [B, N, H1, W1, 2]
        radius : int

    Returns:
        corr : [B, N, (2r+1)^2, H1, W1]
    """
    B, H1, W1, _ = fmap1.shape
    _, H2, W2, _ = fmap2.shape
    N = coords.shape[1]
    rd = 2 * radius + 1
    D = rd + 1

    corr = fmap1.new_zeros(B, N, rd * rd, H1, W1)

    for b in range(B):
        for n in range(N):
            for h1 in range(H1):
                for w1 in range(W1):
                    x = coords[b, n, h1, w1, 0].item()
                    y = coords[b, n, h1, w1, 1].item()

                    base_i = math.floor(y)
                    base_j = math.floor(x)
                    dx = x - base_j
                    dy = y - base_i

                    corners = fmap1.new_zeros(D, D)
                    for ii in range(D):
                        for jj in range(D):
                            i2 = base_i - radius + ii
                            j2 = base_j - radius + jj
                            if within_bounds(i2, j2, H2, W2):
                                corners[ii, jj] = torch.dot(fmap1[b, h1, w1], fmap2[b, i2, j2])

                    out = (
                        (1 - dy) * (1 - dx) * corners[:D-1, :D-1]
                        + (1 - dy) * (dx)   * corners[:D-1, 1:]
                        + (dy)     * (1 - dx) * corners[1:, :D-1]
                        + (dy)     * (dx)   * corners[1:, 1:]
                    )
                    corr[b, n, :, h1, w1] = out.reshape(-1)

    return corr
