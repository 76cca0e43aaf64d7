import torch

from .errors import CorrelationError, CorrelationInputError


def cdiv(a, b):
    return (a + b - 1) // b


def is_power_of_2(n):
    return n > 0 and (n & (n - 1)) == 0


class LaunchConfig:
    """
    Work decomposition shared by the forward and backward kernels.

    The H x W output plane is cut into TILE_H x TILE_W tiles. One work unit
    handles one (batch, tile) pair and owns TILE_H * TILE_W lanes, one per
    tile pixel. Channels are consumed CHANNEL_GROUP at a time.

    Args:
        batch (int): batch size B.
        height, width (int): output plane size (grid A spatial size).
        channels (int): feature dimension C.
        tile_h, tile_w (int): tile geometry.
        channel_group (int): channels staged per iteration.
    """
    def __init__(self, batch, height, width, channels, tile_h=4, tile_w=8, channel_group=32):
        if tile_h < 1 or tile_w < 1:
            raise CorrelationError(f"tile must be at least 1x1, got {tile_h}x{tile_w}")
        if channel_group < 1:
            raise CorrelationError(f"CHANNEL_GROUP must be positive, got {channel_group}")
        if channels % channel_group != 0:
            raise CorrelationInputError(
                f"feature dim {channels} is not a multiple of CHANNEL_GROUP={channel_group}")

        self.batch = batch
        self.height = height
        self.width = width
        self.channels = channels
        self.tile_h = tile_h
        self.tile_w = tile_w
        self.channel_group = channel_group

    @classmethod
    def from_cfg(cls, cfg, batch, height, width, channels):
        return cls(batch, height, width, channels,
            tile_h=cfg.TILE_H, tile_w=cfg.TILE_W, channel_group=cfg.CHANNEL_GROUP)

    @property
    def tile_area(self):
        return self.tile_h * self.tile_w

    @property
    def tiles_y(self):
        return cdiv(self.height, self.tile_h)

    @property
    def tiles_x(self):
        return cdiv(self.width, self.tile_w)

    @property
    def grid(self):
        """ one work unit per (batch, tile row, tile column) """
        return (self.batch, self.tiles_y, self.tiles_x)

    @property
    def block(self):
        """ lanes per work unit, one per tile pixel """
        return (self.tile_h, self.tile_w)

    def channel_groups(self):
        for c0 in range(0, self.channels, self.channel_group):
            yield c0, c0 + self.channel_group

    def check_triton(self):
        # tl.arange only takes power of 2 extents
        if not is_power_of_2(self.tile_area):
            raise CorrelationInputError(
                f"triton backend needs TILE_H*TILE_W to be a power of 2, got {self.tile_area}")
        if not is_power_of_2(self.channel_group):
            raise CorrelationInputError(
                f"triton backend needs CHANNEL_GROUP to be a power of 2, got {self.channel_group}")

    def __repr__(self):
        return (f"LaunchConfig(grid={self.grid}, block={self.block}, "
                f"channels={self.channels}, channel_group={self.channel_group})")


def stage_tiles(x, launch):
    """
    Cut the spatial plane of x into work-unit tiles.

    x: [B, H, W, ...] -> [B, TY, TX, TILE_H*TILE_W, ...]

    Pixels of a tile that overrun the plane are zero filled (False for bool).
    """
    B, H, W = x.shape[:3]
    rest = x.shape[3:]
    th, tw = launch.tile_h, launch.tile_w
    ty, tx = cdiv(H, th), cdiv(W, tw)

    padded = x.new_zeros((B, ty * th, tx * tw) + rest)
    padded[:, :H, :W] = x

    padded = padded.view((B, ty, th, tx, tw) + rest).transpose(2, 3)
    return padded.reshape((B, ty, tx, th * tw) + rest)


def unstage_tiles(t, launch, height, width):
    """ inverse of stage_tiles, overrun pixels are dropped """
    B, ty, tx = t.shape[:3]
    rest = t.shape[4:]
    th, tw = launch.tile_h, launch.tile_w

    t = t.reshape((B, ty, tx, th, tw) + rest).transpose(2, 3)
    t = t.reshape((B, ty * th, tx * tw) + rest)
    return t[:, :height, :width]


def tile_mask(launch, device):
    """ [B, TY, TX, TA] True where the lane maps to a pixel inside the plane """
    inside = torch.ones(launch.batch, launch.height, launch.width, dtype=torch.bool, device=device)
    return stage_tiles(inside, launch)
