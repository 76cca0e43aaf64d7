import logging

import triton
import triton.language as tl

from .errors import CorrelationInputError

logger = logging.getLogger(__name__)


# --------------------------
# Splat helpers
# --------------------------
# Same corner -> cell mapping as altcorr.splat, for use inside kernels.
@triton.jit
def splat_cell(ix, iy, oy: tl.constexpr, ox: tl.constexpr, RD: tl.constexpr):
    """ row-major channel of the cell fed by corner (ix, iy) at offset (oy, ox), and its bounds test """
    cy = iy - oy
    cx = ix - ox
    valid = (cy >= 0) & (cy < RD) & (cx >= 0) & (cx < RD)
    return cy * RD + cx, valid


@triton.jit
def splat_weight(dx, dy, oy: tl.constexpr, ox: tl.constexpr):
    if oy == 1:
        wy = dy
    else:
        wy = 1.0 - dy
    if ox == 1:
        wx = dx
    else:
        wx = 1.0 - dx
    return wy * wx


# --------------------------
# Triton kernels
# --------------------------
@triton.jit
def corr_forward_kernel(
    fmap1_ptr, fmap2_ptr, coords_ptr, corr_ptr,
    N, H1, W1, H2, W2, C,
    stride_f1_b, stride_f1_h, stride_f1_w, stride_f1_c,
    stride_f2_b, stride_f2_h, stride_f2_w, stride_f2_c,
    stride_xy_b, stride_xy_n, stride_xy_h, stride_xy_w, stride_xy_c,
    stride_corr_b, stride_corr_n, stride_corr_k, stride_corr_h, stride_corr_w,
    R: tl.constexpr, TILE_H: tl.constexpr, TILE_W: tl.constexpr,
    CHANNEL_GROUP: tl.constexpr, CELLS: tl.constexpr,
):
    RD: tl.constexpr = 2 * R + 1

    b = tl.program_id(0)
    tile_y = tl.program_id(1)
    tile_x = tl.program_id(2)

    # one lane per tile pixel
    lanes = tl.arange(0, TILE_H * TILE_W)
    h1 = tile_y * TILE_H + lanes // TILE_W
    w1 = tile_x * TILE_W + lanes % TILE_W
    inside = (h1 < H1) & (w1 < W1)

    chans = tl.arange(0, CHANNEL_GROUP)
    cells = tl.arange(0, CELLS)

    f1_base = fmap1_ptr + b * stride_f1_b
    f2_base = fmap2_ptr + b * stride_f2_b
    xy_base = coords_ptr + b * stride_xy_b + h1 * stride_xy_h + w1 * stride_xy_w
    corr_offs = cells[None, :] * stride_corr_k + h1[:, None] * stride_corr_h + w1[:, None] * stride_corr_w
    corr_mask = inside[:, None] & (cells[None, :] < RD * RD)

    for c0 in range(0, C, CHANNEL_GROUP):
        # stage grid A
        f1_offs = h1[:, None] * stride_f1_h + w1[:, None] * stride_f1_w + (c0 + chans)[None, :] * stride_f1_c
        f1 = tl.load(f1_base + f1_offs, mask=inside[:, None], other=0.0).to(tl.float32)

        for n in range(0, N):
            x = tl.load(xy_base + n * stride_xy_n, mask=inside, other=0.0).to(tl.float32)
            y = tl.load(xy_base + n * stride_xy_n + stride_xy_c, mask=inside, other=0.0).to(tl.float32)
            x0 = tl.floor(x)
            y0 = tl.floor(y)
            dx = x - x0
            dy = y - y0
            x0 = x0.to(tl.int32)
            y0 = y0.to(tl.int32)

            acc = tl.zeros((TILE_H * TILE_W, CELLS), dtype=tl.float32)
            for iy in range(0, RD + 1):
                for ix in range(0, RD + 1):
                    h2 = y0 - R + iy
                    w2 = x0 - R + ix
                    valid = inside & (h2 >= 0) & (h2 < H2) & (w2 >= 0) & (w2 < W2)

                    # stage grid B at this corner
                    f2_offs = h2[:, None] * stride_f2_h + w2[:, None] * stride_f2_w + (c0 + chans)[None, :] * stride_f2_c
                    f2 = tl.load(f2_base + f2_offs, mask=valid[:, None], other=0.0).to(tl.float32)

                    s = tl.sum(f1 * f2, axis=1)
                    for oy in tl.static_range(2):
                        for ox in tl.static_range(2):
                            k, hit = splat_cell(ix, iy, oy, ox, RD)
                            w = splat_weight(dx, dy, oy, ox)
                            acc += tl.where((cells[None, :] == k) & hit, (w * s)[:, None], 0.0)

            # channel groups add into the same cells
            corr_ptrs = corr_ptr + b * stride_corr_b + n * stride_corr_n + corr_offs
            prev = tl.load(corr_ptrs, mask=corr_mask, other=0.0).to(tl.float32)
            tl.store(corr_ptrs, (prev + acc).to(corr_ptr.dtype.element_ty), mask=corr_mask)


@triton.jit
def corr_backward_kernel(
    fmap1_ptr, fmap2_ptr, coords_ptr, corr_grad_ptr, fmap1_grad_ptr, fmap2_grad_ptr,
    N, H1, W1, H2, W2, C,
    stride_f1_b, stride_f1_h, stride_f1_w, stride_f1_c,
    stride_f2_b, stride_f2_h, stride_f2_w, stride_f2_c,
    stride_xy_b, stride_xy_n, stride_xy_h, stride_xy_w, stride_xy_c,
    stride_g_b, stride_g_n, stride_g_k, stride_g_h, stride_g_w,
    R: tl.constexpr, TILE_H: tl.constexpr, TILE_W: tl.constexpr,
    CHANNEL_GROUP: tl.constexpr,
):
    # gradient buffers share the layout of their grids
    RD: tl.constexpr = 2 * R + 1

    b = tl.program_id(0)
    tile_y = tl.program_id(1)
    tile_x = tl.program_id(2)

    lanes = tl.arange(0, TILE_H * TILE_W)
    h1 = tile_y * TILE_H + lanes // TILE_W
    w1 = tile_x * TILE_W + lanes % TILE_W
    inside = (h1 < H1) & (w1 < W1)

    chans = tl.arange(0, CHANNEL_GROUP)

    f1_base = fmap1_ptr + b * stride_f1_b
    f2_base = fmap2_ptr + b * stride_f2_b
    f1_grad_base = fmap1_grad_ptr + b * stride_f1_b
    f2_grad_base = fmap2_grad_ptr + b * stride_f2_b
    xy_base = coords_ptr + b * stride_xy_b + h1 * stride_xy_h + w1 * stride_xy_w
    g_base = corr_grad_ptr + b * stride_g_b + h1 * stride_g_h + w1 * stride_g_w

    for c0 in range(0, C, CHANNEL_GROUP):
        f1_offs = h1[:, None] * stride_f1_h + w1[:, None] * stride_f1_w + (c0 + chans)[None, :] * stride_f1_c
        f1 = tl.load(f1_base + f1_offs, mask=inside[:, None], other=0.0).to(tl.float32)
        f1_grad = tl.zeros((TILE_H * TILE_W, CHANNEL_GROUP), dtype=tl.float32)

        for n in range(0, N):
            x = tl.load(xy_base + n * stride_xy_n, mask=inside, other=0.0).to(tl.float32)
            y = tl.load(xy_base + n * stride_xy_n + stride_xy_c, mask=inside, other=0.0).to(tl.float32)
            x0 = tl.floor(x)
            y0 = tl.floor(y)
            dx = x - x0
            dy = y - y0
            x0 = x0.to(tl.int32)
            y0 = y0.to(tl.int32)

            for iy in range(0, RD + 1):
                for ix in range(0, RD + 1):
                    h2 = y0 - R + iy
                    w2 = x0 - R + ix
                    valid = inside & (h2 >= 0) & (h2 < H2) & (w2 >= 0) & (w2 < W2)

                    f2_offs = h2[:, None] * stride_f2_h + w2[:, None] * stride_f2_w + (c0 + chans)[None, :] * stride_f2_c
                    f2 = tl.load(f2_base + f2_offs, mask=valid[:, None], other=0.0).to(tl.float32)

                    # un-splat the upstream gradient onto this corner
                    g = tl.zeros((TILE_H * TILE_W,), dtype=tl.float32)
                    for oy in tl.static_range(2):
                        for ox in tl.static_range(2):
                            k, hit = splat_cell(ix, iy, oy, ox, RD)
                            w = splat_weight(dx, dy, oy, ox)
                            gk = tl.load(g_base + n * stride_g_n + k * stride_g_k, mask=inside & hit, other=0.0)
                            g += w * gk.to(tl.float32)

                    f1_grad += g[:, None] * f2

                    # other tiles may hit the same grid-B location
                    f2_grad = g[:, None] * f1
                    tl.atomic_add(f2_grad_base + f2_offs,
                        f2_grad.to(fmap2_grad_ptr.dtype.element_ty), mask=valid[:, None])

        # grid-A gradient only touches this tile's own pixels
        f1_grad_ptrs = f1_grad_base + f1_offs
        prev = tl.load(f1_grad_ptrs, mask=inside[:, None], other=0.0).to(tl.float32)
        tl.store(f1_grad_ptrs, (prev + f1_grad).to(fmap1_grad_ptr.dtype.element_ty), mask=inside[:, None])


# --------------------------
# Python wrappers
# --------------------------
def corr_triton_forward(fmap1, fmap2, coords, corr, radius, launch):
    """
    Triton correlation forward pass, accumulates into corr.

    fmap1:  [B, H1, W1, C]
    fmap2:  [B, H2, W2, C]
    coords: [B, N, H1, W1, 2]
    corr:   [B, N, (2r+1)^2, H1, W1], zero-initialized
    """
    launch.check_triton()

    B, H1, W1, C = fmap1.shape
    _, H2, W2, _ = fmap2.shape
    N = coords.shape[1]
    rd = 2 * radius + 1

    logger.debug("ALTCORR FORWARD triton %s radius=%d", launch, radius)

    if H2 == 0 or W2 == 0:
        return

    corr_forward_kernel[launch.grid](
        fmap1, fmap2, coords, corr,
        N, H1, W1, H2, W2, C,
        *fmap1.stride(),
        *fmap2.stride(),
        *coords.stride(),
        *corr.stride(),
        R=radius, TILE_H=launch.tile_h, TILE_W=launch.tile_w,
        CHANNEL_GROUP=launch.channel_group, CELLS=triton.next_power_of_2(rd * rd),
    )


def corr_triton_backward(fmap1, fmap2, coords, corr_grad, fmap1_grad, fmap2_grad, radius, launch):
    """
    Triton correlation backward pass, accumulates into fmap1_grad / fmap2_grad.

    Gradient buffers must have the same strides as fmap1 / fmap2.
    """
    launch.check_triton()

    B, H1, W1, C = fmap1.shape
    _, H2, W2, _ = fmap2.shape
    N = coords.shape[1]

    logger.debug("ALTCORR BACKWARD triton %s radius=%d", launch, radius)

    # kernel indexes the gradient buffers with the feature grid strides
    if fmap1_grad.stride() != fmap1.stride():
        raise CorrelationInputError(
            f"fmap1_grad strides {fmap1_grad.stride()} differ from fmap1 strides {fmap1.stride()}")
    if fmap2_grad.stride() != fmap2.stride():
        raise CorrelationInputError(
            f"fmap2_grad strides {fmap2_grad.stride()} differ from fmap2 strides {fmap2.stride()}")

    if H2 == 0 or W2 == 0:
        return

    corr_backward_kernel[launch.grid](
        fmap1, fmap2, coords, corr_grad, fmap1_grad, fmap2_grad,
        N, H1, W1, H2, W2, C,
        *fmap1.stride(),
        *fmap2.stride(),
        *coords.stride(),
        *corr_grad.stride(),
        R=radius, TILE_H=launch.tile_h, TILE_W=launch.tile_w,
        CHANNEL_GROUP=launch.channel_group,
    )
