import logging
import operator

import torch

from .config import cfg as default_cfg
from .correlation_kernel import corr_forward_kernel, corr_backward_kernel
from .errors import CorrelationError, CorrelationInputError, BackendUnavailableError
from .launch import LaunchConfig

logger = logging.getLogger(__name__)

BACKENDS = ('AUTO', 'TRITON', 'TORCH')
LAYOUTS = ('ROW_MAJOR', 'COLUMN_MAJOR')


def as_radius(radius):
    """ radius as a plain int, integer numpy scalars and 0-d tensors included """
    if isinstance(radius, bool):
        raise CorrelationInputError(f"radius must be a non-negative int, got {radius!r}")

    try:
        value = operator.index(radius)
    except TypeError:
        raise CorrelationInputError(f"radius must be a non-negative int, got {radius!r}") from None

    if value < 0:
        raise CorrelationInputError(f"radius must be a non-negative int, got {radius!r}")
    return value


def check_inputs(fmap1, fmap2, coords, radius, corr_grad=None):
    """ reject inputs the kernels are not defined for """
    radius = as_radius(radius)

    if fmap1.dim() != 4 or fmap2.dim() != 4:
        raise CorrelationInputError(
            f"feature grids must be [B, H, W, C], got {tuple(fmap1.shape)} and {tuple(fmap2.shape)}")

    B, H1, W1, C = fmap1.shape
    if fmap2.shape[0] != B or fmap2.shape[3] != C:
        raise CorrelationInputError(
            f"grid B {tuple(fmap2.shape)} does not match batch / channels of grid A {tuple(fmap1.shape)}")

    if coords.dim() != 5 or coords.shape[0] != B or tuple(coords.shape[2:]) != (H1, W1, 2):
        raise CorrelationInputError(
            f"coords must be [{B}, N, {H1}, {W1}, 2], got {tuple(coords.shape)}")

    tensors = [fmap1, fmap2, coords]
    if corr_grad is not None:
        rd = 2 * radius + 1
        expected = (B, coords.shape[1], rd * rd, H1, W1)
        if tuple(corr_grad.shape) != expected:
            raise CorrelationInputError(
                f"corr_grad must be {list(expected)}, got {tuple(corr_grad.shape)}")
        tensors.append(corr_grad)

    for t in tensors:
        if not t.is_floating_point():
            raise CorrelationInputError(f"expected floating point tensors, got {t.dtype}")
        if t.dtype != fmap1.dtype:
            raise CorrelationInputError(f"dtype mismatch: {t.dtype} vs {fmap1.dtype}")
        if t.device != fmap1.device:
            raise CorrelationInputError(f"device mismatch: {t.device} vs {fmap1.device}")


def select_backend(cfg, device):
    backend = cfg.BACKEND.upper()
    if backend not in BACKENDS:
        raise CorrelationError(f"unknown BACKEND {cfg.BACKEND!r}, expected one of {BACKENDS}")

    if backend == 'AUTO':
        backend = 'TRITON' if device.type == 'cuda' else 'TORCH'

    if backend == 'TRITON' and device.type != 'cuda':
        raise BackendUnavailableError(f"triton backend needs cuda tensors, got {device}")

    return backend


def volume_layout(cfg):
    layout = cfg.VOLUME_LAYOUT.upper()
    if layout not in LAYOUTS:
        raise CorrelationError(f"unknown VOLUME_LAYOUT {cfg.VOLUME_LAYOUT!r}, expected one of {LAYOUTS}")
    return layout


def to_layout(corr, radius, layout):
    """ row-major kernel volume -> requested layout """
    if layout == 'ROW_MAJOR':
        return corr

    B, N, _, H, W = corr.shape
    rd = 2 * radius + 1
    corr = corr.view(B, N, rd, rd, H, W).transpose(2, 3)
    return corr.reshape(B, N, rd * rd, H, W)


# the swap of the two window axes is its own inverse
from_layout = to_layout


def forward(fmap1, fmap2, coords, radius, cfg=None):
    """
    Local correlation volume with bilinear splatting.

    Args:
        fmap1  (torch.Tensor): source grid A, [B, H1, W1, C].
        fmap2  (torch.Tensor): target grid B, [B, H2, W2, C].
        coords (torch.Tensor): sample (x, y) in grid-B pixels, [B, N, H1, W1, 2].
        radius (int): search radius r.
        cfg (CfgNode, optional): defaults to altcorr.config.cfg.

    Returns:
        torch.Tensor: correlation volume [B, N, (2r+1)^2, H1, W1].
    """
    cfg = default_cfg if cfg is None else cfg
    radius = as_radius(radius)
    if cfg.CHECK_INPUTS:
        check_inputs(fmap1, fmap2, coords, radius)

    B, H1, W1, C = fmap1.shape
    N = coords.shape[1]
    rd = 2 * radius + 1

    launch = LaunchConfig.from_cfg(cfg, B, H1, W1, C)
    backend = select_backend(cfg, fmap1.device)
    layout = volume_layout(cfg)

    fmap1 = fmap1.contiguous()
    fmap2 = fmap2.contiguous()
    coords = coords.contiguous()

    corr = torch.zeros(B, N, rd * rd, H1, W1, dtype=fmap1.dtype, device=fmap1.device)

    if backend == 'TRITON':
        from .correlation_triton import corr_triton_forward
        corr_triton_forward(fmap1, fmap2, coords, corr, radius, launch)
    else:
        corr_forward_kernel(fmap1, fmap2, coords, corr, radius, launch)

    return to_layout(corr, radius, layout)


def backward(fmap1, fmap2, coords, corr_grad, radius, cfg=None):
    """
    Gradients of forward w.r.t. both feature grids.

    Args:
        fmap1, fmap2, coords, radius, cfg: as in forward.
        corr_grad (torch.Tensor): upstream gradient, [B, N, (2r+1)^2, H1, W1].

    Returns:
        tuple: (fmap1_grad, fmap2_grad, coords_grad). coords_grad is all zero,
        the derivative of the splat weights w.r.t. the coordinates is not
        computed.
    """
    cfg = default_cfg if cfg is None else cfg
    radius = as_radius(radius)
    if cfg.CHECK_INPUTS:
        check_inputs(fmap1, fmap2, coords, radius, corr_grad)

    B, H1, W1, C = fmap1.shape

    launch = LaunchConfig.from_cfg(cfg, B, H1, W1, C)
    backend = select_backend(cfg, fmap1.device)
    layout = volume_layout(cfg)

    fmap1 = fmap1.contiguous()
    fmap2 = fmap2.contiguous()
    coords = coords.contiguous()
    corr_grad = from_layout(corr_grad, radius, layout).contiguous()

    fmap1_grad = torch.zeros_like(fmap1)
    fmap2_grad = torch.zeros_like(fmap2)
    coords_grad = torch.zeros_like(coords)

    if backend == 'TRITON':
        from .correlation_triton import corr_triton_backward
        corr_triton_backward(fmap1, fmap2, coords, corr_grad, fmap1_grad, fmap2_grad, radius, launch)
    else:
        corr_backward_kernel(fmap1, fmap2, coords, corr_grad, fmap1_grad, fmap2_grad, radius, launch)

    return fmap1_grad, fmap2_grad, coords_grad


class CorrLayer(torch.autograd.Function):
    @staticmethod
    def forward(ctx, fmap1, fmap2, coords, radius, cfg):
        """ forward correlation """
        ctx.save_for_backward(fmap1, fmap2, coords)
        ctx.radius = radius
        ctx.cfg = cfg

        return forward(fmap1, fmap2, coords, radius, cfg)

    @staticmethod
    def backward(ctx, grad):
        """ backward correlation """
        fmap1, fmap2, coords = ctx.saved_tensors

        fmap1_grad, fmap2_grad, _ = \
            backward(fmap1, fmap2, coords, grad.contiguous(), ctx.radius, ctx.cfg)

        return fmap1_grad, fmap2_grad, None, None, None


def corr(fmap1, fmap2, coords, radius=4, cfg=None):
    return CorrLayer.apply(fmap1, fmap2, coords, radius, cfg)
