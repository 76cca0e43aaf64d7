#!/usr/bin/env python3
"""
Compare correlation outputs of the altcorr backends.

This script:
1. Generates random feature grids and sample coordinates
2. Runs the loop reference and each requested backend
3. Compares forward volumes (and backward gradients between backends)
4. Optionally saves inputs / outputs as float32 .bin files

Usage:
    python compare_correlation_outputs.py --radius 3 --backends TORCH TRITON --output_dir ./dump
"""

import argparse
from pathlib import Path

import numpy as np
import torch

from altcorr import forward, backward
from altcorr.config import cfg
from altcorr.correlation_kernel import corr_forward_reference


def compare_tensors(ref_tensor, test_tensor, tolerance=1e-4):
    """Compare two tensors and return comparison results."""
    ref_np = ref_tensor.detach().cpu().double().numpy().flatten()
    test_np = test_tensor.detach().cpu().double().numpy().flatten()

    if ref_np.shape != test_np.shape:
        return {
            'match': False,
            'max_diff': None,
            'mean_diff': None,
            'shape': ref_np.shape,
            'num_mismatched': None,
        }

    diff = np.abs(ref_np - test_np)
    max_diff = float(diff.max()) if diff.size else 0.0

    return {
        'match': bool(np.all(np.isfinite(test_np)) and max_diff < tolerance),
        'max_diff': max_diff,
        'mean_diff': float(diff.mean()) if diff.size else 0.0,
        'shape': ref_np.shape,
        'num_mismatched': int(np.sum(diff > tolerance)),
    }


def format_number(val, precision=6):
    """Format number for display."""
    if val is None:
        return "N/A"
    if abs(val) < 1e-6:
        return f"{val:.2e}"
    return f"{val:.{precision}f}"


def print_comparison_table(results):
    """Print comparison results in a table format."""
    print("\n" + "="*90)
    print("CORRELATION OUTPUT COMPARISON")
    print("="*90)
    print(f"{'Component':<30} {'Status':<12} {'Max Diff':<16} {'Mean Diff':<16} {'Mismatched':<14}")
    print("-"*90)

    for name, result in results.items():
        status = "MATCH" if result['match'] else "MISMATCH"
        total = int(np.prod(result['shape']))
        mismatched = result['num_mismatched']
        mismatch_str = f"{mismatched}/{total}" if mismatched is not None else "shape"
        print(f"{name:<30} {status:<12} {format_number(result['max_diff']):<16} "
              f"{format_number(result['mean_diff']):<16} {mismatch_str:<14}")

    print("="*90)


def save_bin(tensor, path):
    tensor.detach().cpu().float().numpy().tofile(str(path))
    print(f"Saved {tuple(tensor.shape)} -> {path}")


def make_inputs(args, device):
    B, N, C = args.batch, args.groups, args.channels
    fmap1 = torch.randn(B, args.height, args.width, C, device=device)
    fmap2 = torch.randn(B, args.height2, args.width2, C, device=device)

    # sample positions spread a little beyond grid B so the zero padding is exercised
    x = torch.rand(B, N, args.height, args.width, device=device) * (args.width2 + 2) - 1
    y = torch.rand(B, N, args.height, args.width, device=device) * (args.height2 + 2) - 1
    coords = torch.stack([x, y], dim=-1)

    return fmap1, fmap2, coords


def main():
    parser = argparse.ArgumentParser(description='Compare altcorr backends against the loop reference')
    parser.add_argument('--radius', type=int, default=3)
    parser.add_argument('--batch', type=int, default=1)
    parser.add_argument('--groups', type=int, default=1)
    parser.add_argument('--channels', type=int, default=64)
    parser.add_argument('--height', type=int, default=12)
    parser.add_argument('--width', type=int, default=20)
    parser.add_argument('--height2', type=int, default=10)
    parser.add_argument('--width2', type=int, default=16)
    parser.add_argument('--backends', nargs='+', default=['TORCH'],
                        help='backends to compare (TORCH, TRITON)')
    parser.add_argument('--tolerance', type=float, default=1e-3)
    parser.add_argument('--output_dir', type=str, default=None,
                        help='save inputs and outputs as .bin files here')
    parser.add_argument('--seed', type=int, default=42)
    parser.add_argument('opts', nargs=argparse.REMAINDER,
                        help='config overrides, e.g. TILE_H 8 CHANNEL_GROUP 16')

    args = parser.parse_args()

    torch.manual_seed(args.seed)
    np.random.seed(args.seed)

    run_cfg = cfg.clone()
    run_cfg.merge_from_list(args.opts)

    device = 'cuda' if 'TRITON' in args.backends else 'cpu'
    fmap1, fmap2, coords = make_inputs(args, device)

    print(f"{'='*60}")
    print(f"fmap1: {tuple(fmap1.shape)}  fmap2: {tuple(fmap2.shape)}  coords: {tuple(coords.shape)}")
    print(f"radius: {args.radius}  device: {device}")
    print(f"tile: {run_cfg.TILE_H}x{run_cfg.TILE_W}  channel group: {run_cfg.CHANNEL_GROUP}")
    print(f"{'='*60}")

    reference = corr_forward_reference(fmap1.cpu(), fmap2.cpu(), coords.cpu(), args.radius)

    rd = 2 * args.radius + 1
    corr_grad = torch.randn(args.batch, args.groups, rd * rd, args.height, args.width, device=device)

    results = {}
    outputs = {}
    for backend in args.backends:
        run_cfg.defrost()
        run_cfg.BACKEND = backend
        run_cfg.VOLUME_LAYOUT = 'ROW_MAJOR'
        run_cfg.freeze()

        out = forward(fmap1, fmap2, coords, args.radius, run_cfg)
        grads = backward(fmap1, fmap2, coords, corr_grad, args.radius, run_cfg)
        outputs[backend] = (out, grads)

        results[f"forward[{backend}]"] = compare_tensors(reference, out, args.tolerance)

    backends = list(outputs)
    for other in backends[1:]:
        for i, name in enumerate(['fmap1_grad', 'fmap2_grad']):
            results[f"{name}[{backends[0]} vs {other}]"] = compare_tensors(
                outputs[backends[0]][1][i], outputs[other][1][i], args.tolerance)

    print_comparison_table(results)

    if args.output_dir is not None:
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        save_bin(fmap1, output_dir / "fmap1.bin")
        save_bin(fmap2, output_dir / "fmap2.bin")
        save_bin(coords, output_dir / "coords.bin")
        save_bin(reference, output_dir / "corr_reference.bin")
        for backend, (out, grads) in outputs.items():
            save_bin(out, output_dir / f"corr_{backend.lower()}.bin")
            save_bin(grads[0], output_dir / f"fmap1_grad_{backend.lower()}.bin")
            save_bin(grads[1], output_dir / f"fmap2_grad_{backend.lower()}.bin")

    return 0 if all(r['match'] for r in results.values()) else 1


if __name__ == '__main__':
    raise SystemExit(main())


# Command: compare torch and triton backends at radius 4
# python compare_correlation_outputs.py --radius 4 --channels 128 --backends TORCH TRITON
