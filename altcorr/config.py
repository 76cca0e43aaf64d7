from yacs.config import CfgNode as CN

_C = CN()

# spatial tile processed by one work unit (TILE_H x TILE_W output pixels)
_C.TILE_H = 4
_C.TILE_W = 8

# channels staged per iteration, feature dim must be a multiple of this
_C.CHANNEL_GROUP = 32

# kernel backend: 'AUTO' (triton on cuda, torch otherwise), 'TRITON', 'TORCH'
_C.BACKEND = 'AUTO'

# order of the (2r+1)^2 volume channels
# ROW_MAJOR:    k = iy * (2r+1) + ix
# COLUMN_MAJOR: k = ix * (2r+1) + iy
_C.VOLUME_LAYOUT = 'ROW_MAJOR'

# reject malformed inputs before launching
_C.CHECK_INPUTS = True

cfg = _C
