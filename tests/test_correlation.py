import unittest

import numpy as np
import torch

from altcorr import backward, corr, forward
from altcorr.config import cfg
from altcorr.correlation_kernel import corr_forward_reference
from altcorr.errors import BackendUnavailableError, CorrelationError, CorrelationInputError


def make_cfg(tile_h=2, tile_w=4, channel_group=4, backend='TORCH', layout='ROW_MAJOR'):
    c = cfg.clone()
    c.TILE_H = tile_h
    c.TILE_W = tile_w
    c.CHANNEL_GROUP = channel_group
    c.BACKEND = backend
    c.VOLUME_LAYOUT = layout
    return c


def make_inputs(B=1, N=1, H1=3, W1=5, H2=4, W2=6, C=8, dtype=torch.float64, seed=0):
    g = torch.Generator().manual_seed(seed)
    fmap1 = torch.randn(B, H1, W1, C, generator=g, dtype=dtype)
    fmap2 = torch.randn(B, H2, W2, C, generator=g, dtype=dtype)
    x = torch.rand(B, N, H1, W1, generator=g, dtype=dtype) * (W2 + 2) - 1
    y = torch.rand(B, N, H1, W1, generator=g, dtype=dtype) * (H2 + 2) - 1
    coords = torch.stack([x, y], dim=-1)
    return fmap1, fmap2, coords


class TestForward(unittest.TestCase):
    def test_output_shape(self):
        fmap1, fmap2, coords = make_inputs(B=2, N=3)
        for radius in (0, 1, 2):
            out = forward(fmap1, fmap2, coords, radius, make_cfg())
            self.assertEqual(out.shape, (2, 3, (2 * radius + 1) ** 2, 3, 5))

    def test_matches_reference(self):
        fmap1, fmap2, coords = make_inputs(B=2, N=2, H1=5, W1=7, C=8)
        expected = corr_forward_reference(fmap1, fmap2, coords, 2)
        for tile_h, tile_w in [(2, 4), (3, 3), (4, 8), (1, 1)]:
            out = forward(fmap1, fmap2, coords, 2, make_cfg(tile_h, tile_w, channel_group=4))
            self.assertTrue(torch.allclose(out, expected, atol=1e-10),
                            f"tile {tile_h}x{tile_w}")

    def test_default_config(self):
        fmap1, fmap2, coords = make_inputs(H1=5, W1=9, C=32, dtype=torch.float32)
        expected = corr_forward_reference(fmap1, fmap2, coords, 1)
        out = forward(fmap1, fmap2, coords, 1)
        self.assertTrue(torch.allclose(out, expected, atol=1e-4))

    def test_zero_radius_integer_coords(self):
        fmap1, fmap2, _ = make_inputs(H1=4, W1=6, H2=4, W2=6)
        ys, xs = torch.meshgrid(torch.arange(4), torch.arange(6), indexing='ij')
        coords = torch.stack([xs, ys], dim=-1).to(fmap1.dtype)[None, None]

        out = forward(fmap1, fmap2, coords, 0, make_cfg())
        expected = (fmap1 * fmap2).sum(dim=-1)

        self.assertEqual(out.shape, (1, 1, 1, 4, 6))
        self.assertTrue(torch.allclose(out[:, 0, 0], expected, atol=1e-12))

    def test_border_weight_is_dropped(self):
        fmap1 = torch.randn(1, 1, 1, 4, dtype=torch.float64)
        fmap2 = torch.randn(1, 1, 1, 4, dtype=torch.float64)
        s = torch.dot(fmap1[0, 0, 0], fmap2[0, 0, 0])

        # only corner (0, 0) lies inside the 1x1 grid B
        coords = torch.tensor([0.25, 0.5], dtype=torch.float64).view(1, 1, 1, 1, 2)
        out = forward(fmap1, fmap2, coords, 0, make_cfg())
        self.assertAlmostEqual(out.item(), (0.5 * 0.75 * s).item())

        # only corner (1, 1)
        coords = torch.tensor([-0.75, -0.5], dtype=torch.float64).view(1, 1, 1, 1, 2)
        out = forward(fmap1, fmap2, coords, 0, make_cfg())
        self.assertAlmostEqual(out.item(), (0.5 * 0.25 * s).item())

    def test_zero_padding(self):
        fmap1, fmap2, coords = make_inputs(N=2)
        coords[:, 1] = 100.0
        coords[:, 0, 0, 0] = torch.tensor([-50.0, -50.0], dtype=coords.dtype)

        out = forward(fmap1, fmap2, coords, 2, make_cfg())
        self.assertTrue(torch.all(out[:, 1] == 0))
        self.assertTrue(torch.all(out[:, 0, :, 0, 0] == 0))

    def test_deterministic(self):
        fmap1, fmap2, coords = make_inputs(B=2, N=2, dtype=torch.float32)
        c = make_cfg()
        a = forward(fmap1, fmap2, coords, 3, c)
        b = forward(fmap1, fmap2, coords, 3, c)
        self.assertTrue(torch.equal(a, b))

    def test_column_major_layout(self):
        fmap1, fmap2, coords = make_inputs()
        rd = 3
        row = forward(fmap1, fmap2, coords, 1, make_cfg())
        col = forward(fmap1, fmap2, coords, 1, make_cfg(layout='COLUMN_MAJOR'))

        row = row.view(1, 1, rd, rd, 3, 5)
        col = col.view(1, 1, rd, rd, 3, 5)
        self.assertTrue(torch.equal(row, col.transpose(2, 3)))


class TestEmptyTarget(unittest.TestCase):
    def test_forward_with_empty_grid_b(self):
        fmap1 = torch.randn(1, 2, 2, 4)
        coords = torch.zeros(1, 1, 2, 2, 2)
        for shape in ((1, 0, 3, 4), (1, 3, 0, 4)):
            out = forward(fmap1, torch.randn(*shape), coords, 1, make_cfg())
            self.assertEqual(out.shape, (1, 1, 9, 2, 2))
            self.assertTrue(torch.all(out == 0), f"grid B {shape}")

    def test_backward_with_empty_grid_b(self):
        fmap1 = torch.randn(1, 2, 2, 4)
        coords = torch.zeros(1, 1, 2, 2, 2)
        weight = torch.randn(1, 1, 9, 2, 2)
        for shape in ((1, 0, 3, 4), (1, 3, 0, 4)):
            fmap2 = torch.randn(*shape)
            fmap1_grad, fmap2_grad, coords_grad = backward(fmap1, fmap2, coords, weight, 1, make_cfg())
            self.assertEqual(fmap2_grad.shape, shape)
            self.assertTrue(torch.all(fmap1_grad == 0), f"grid B {shape}")
            self.assertTrue(torch.all(coords_grad == 0))


class TestBackward(unittest.TestCase):
    def finite_difference(self, fmap1, fmap2, coords, weight, radius, c, which, index, eps=1e-3):
        inputs = [fmap1.clone(), fmap2.clone()]
        target = inputs[which].view(-1)

        target[index] += eps
        plus = (forward(inputs[0], inputs[1], coords, radius, c) * weight).sum()
        target[index] -= 2 * eps
        minus = (forward(inputs[0], inputs[1], coords, radius, c) * weight).sum()

        return ((plus - minus) / (2 * eps)).item()

    def test_gradient_matches_finite_differences(self):
        c = make_cfg()
        for radius in (0, 1, 3):
            fmap1, fmap2, coords = make_inputs(N=2, seed=radius)
            rd = 2 * radius + 1
            weight = torch.randn(1, 2, rd * rd, 3, 5, dtype=torch.float64,
                                 generator=torch.Generator().manual_seed(10 + radius))

            fmap1_grad, fmap2_grad, coords_grad = backward(fmap1, fmap2, coords, weight, radius, c)
            self.assertTrue(torch.all(coords_grad == 0))

            g = torch.Generator().manual_seed(radius)
            for which, grad in ((0, fmap1_grad), (1, fmap2_grad)):
                for index in torch.randint(0, grad.numel(), (6,), generator=g).tolist():
                    numeric = self.finite_difference(fmap1, fmap2, coords, weight, radius, c, which, index)
                    self.assertAlmostEqual(grad.view(-1)[index].item(), numeric, places=6,
                                           msg=f"radius {radius} grid {which} index {index}")

    def test_gradient_shapes(self):
        fmap1, fmap2, coords = make_inputs(B=2, N=3)
        weight = torch.randn(2, 3, 9, 3, 5, dtype=torch.float64)
        fmap1_grad, fmap2_grad, coords_grad = backward(fmap1, fmap2, coords, weight, 1, make_cfg())
        self.assertEqual(fmap1_grad.shape, fmap1.shape)
        self.assertEqual(fmap2_grad.shape, fmap2.shape)
        self.assertEqual(coords_grad.shape, coords.shape)

    def test_shared_target_accumulates(self):
        c = make_cfg(tile_h=1, tile_w=1)
        radius = 1
        rd = 2 * radius + 1

        feat = torch.randn(1, 1, 1, 8, dtype=torch.float64)
        fmap2 = torch.randn(1, 4, 4, 8, dtype=torch.float64)
        xy = torch.tensor([1.3, 2.6], dtype=torch.float64)
        grad = torch.randn(rd * rd, dtype=torch.float64)

        # one pixel
        coords1 = xy.view(1, 1, 1, 1, 2)
        g1 = grad.view(1, 1, rd * rd, 1, 1)
        _, single, _ = backward(feat, fmap2, coords1, g1, radius, c)

        # two pixels in different tiles sampling the same spot
        fmap1 = feat.expand(1, 1, 2, 8).contiguous()
        coords2 = xy.view(1, 1, 1, 1, 2).expand(1, 1, 1, 2, 2).contiguous()
        g2 = grad.view(1, 1, rd * rd, 1, 1).expand(1, 1, rd * rd, 1, 2).contiguous()
        _, double, _ = backward(fmap1, fmap2, coords2, g2, radius, c)

        self.assertTrue(single.abs().sum() > 0)
        self.assertTrue(torch.allclose(double, 2 * single, rtol=0, atol=1e-12))

    def test_column_major_backward(self):
        fmap1, fmap2, coords = make_inputs()
        rd = 3
        weight = torch.randn(1, 1, rd * rd, 3, 5, dtype=torch.float64)
        weight_t = weight.view(1, 1, rd, rd, 3, 5).transpose(2, 3).reshape(1, 1, rd * rd, 3, 5)

        row = backward(fmap1, fmap2, coords, weight, 1, make_cfg())
        col = backward(fmap1, fmap2, coords, weight_t, 1, make_cfg(layout='COLUMN_MAJOR'))
        self.assertTrue(torch.allclose(row[0], col[0]))
        self.assertTrue(torch.allclose(row[1], col[1]))


class TestCorrLayer(unittest.TestCase):
    def test_autograd_matches_backward(self):
        fmap1, fmap2, coords = make_inputs(N=2)
        c = make_cfg()
        weight = torch.randn(1, 2, 9, 3, 5, dtype=torch.float64)

        f1 = fmap1.clone().requires_grad_(True)
        f2 = fmap2.clone().requires_grad_(True)
        xy = coords.clone().requires_grad_(True)
        (corr(f1, f2, xy, 1, c) * weight).sum().backward()

        fmap1_grad, fmap2_grad, _ = backward(fmap1, fmap2, coords, weight, 1, c)
        self.assertTrue(torch.allclose(f1.grad, fmap1_grad))
        self.assertTrue(torch.allclose(f2.grad, fmap2_grad))
        self.assertIsNone(xy.grad)


class TestInputChecks(unittest.TestCase):
    def test_negative_radius(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(CorrelationInputError):
            forward(fmap1, fmap2, coords, -1, make_cfg())

    def test_integer_like_radius(self):
        fmap1, fmap2, coords = make_inputs()
        expected = forward(fmap1, fmap2, coords, 1, make_cfg())
        for radius in (np.int64(1), torch.tensor(1)):
            out = forward(fmap1, fmap2, coords, radius, make_cfg())
            self.assertTrue(torch.equal(out, expected), f"radius {radius!r}")

            weight = torch.ones_like(expected)
            grads = backward(fmap1, fmap2, coords, weight, radius, make_cfg())
            self.assertEqual(grads[1].shape, fmap2.shape)

    def test_non_integer_radius(self):
        fmap1, fmap2, coords = make_inputs()
        for radius in (True, 1.5, torch.tensor(1.0)):
            with self.assertRaises(CorrelationInputError, msg=f"radius {radius!r}"):
                forward(fmap1, fmap2, coords, radius, make_cfg())

    def test_coords_shape(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(CorrelationInputError):
            forward(fmap1, fmap2, coords[..., :4, :], 1, make_cfg())

    def test_channel_mismatch(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(CorrelationInputError):
            forward(fmap1, fmap2[..., :4], coords, 1, make_cfg())

    def test_channels_not_multiple_of_group(self):
        fmap1, fmap2, coords = make_inputs(C=6)
        with self.assertRaises(CorrelationInputError):
            forward(fmap1, fmap2, coords, 1, make_cfg(channel_group=4))

    def test_integer_dtype(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(CorrelationInputError):
            forward(fmap1.long(), fmap2.long(), coords.long(), 1, make_cfg())

    def test_corr_grad_shape(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(CorrelationInputError):
            backward(fmap1, fmap2, coords, torch.zeros(1, 1, 4, 3, 5, dtype=torch.float64), 1, make_cfg())

    def test_unknown_backend(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(CorrelationError):
            forward(fmap1, fmap2, coords, 1, make_cfg(backend='OPENCL'))

    def test_triton_needs_cuda(self):
        fmap1, fmap2, coords = make_inputs()
        with self.assertRaises(BackendUnavailableError):
            forward(fmap1, fmap2, coords, 1, make_cfg(backend='TRITON'))


@unittest.skipUnless(torch.cuda.is_available(), "triton backend needs cuda")
class TestTritonBackend(unittest.TestCase):
    def test_matches_torch_backend(self):
        fmap1, fmap2, coords = make_inputs(B=2, N=2, H1=9, W1=13, H2=7, W2=11, C=64, dtype=torch.float32)
        fmap1, fmap2, coords = fmap1.cuda(), fmap2.cuda(), coords.cuda()
        weight = torch.randn(2, 2, 49, 9, 13, device='cuda')

        triton_cfg = make_cfg(4, 8, 32, backend='TRITON')
        torch_cfg = make_cfg(4, 8, 32, backend='TORCH')

        out = forward(fmap1, fmap2, coords, 3, triton_cfg)
        expected = forward(fmap1, fmap2, coords, 3, torch_cfg)
        self.assertTrue(torch.allclose(out, expected, atol=1e-4, rtol=1e-4))

        grads = backward(fmap1, fmap2, coords, weight, 3, triton_cfg)
        expected = backward(fmap1, fmap2, coords, weight, 3, torch_cfg)
        self.assertTrue(torch.allclose(grads[0], expected[0], atol=1e-3, rtol=1e-4))
        self.assertTrue(torch.allclose(grads[1], expected[1], atol=1e-3, rtol=1e-4))
        self.assertTrue(torch.all(grads[2] == 0))


if __name__ == "__main__":
    unittest.main()
