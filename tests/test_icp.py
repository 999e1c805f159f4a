import numpy as np
import pytest

from conftest import H, W, small_intrinsics, wavy_depth
from icpvo.geom.se3 import is_rigid
from icpvo.modules.aligner import AlignmentError
from icpvo.modules.icp import CpuIcpAligner, depth_to_vertices, vertices_to_normals
from icpvo.system.config import CameraIntrinsics
from icpvo.system.state import LaunchConfig

ICP_CFG = {"iterations": [4, 3, 2], "min_correspondences": 20}


def test_vertices_mark_missing_depth():
    intr = small_intrinsics()
    depth = np.full((H, W), 1000, np.uint16)
    depth[0, 0] = 0
    depth[1, 1] = 30000  # beyond cutoff
    vmap = depth_to_vertices(depth, intr, depth_cutoff=20.0)
    assert np.all(np.isnan(vmap[0, 0]))
    assert np.all(np.isnan(vmap[1, 1]))
    np.testing.assert_allclose(vmap[23, 10], [(10 - 31.5) / 50.0, (23 - 23.5) / 50.0, 1.0])


def test_flat_wall_normals_face_the_axis():
    vmap = depth_to_vertices(np.full((H, W), 1500, np.uint16), small_intrinsics(), 20.0)
    nmap = vertices_to_normals(vmap)
    inner = nmap[:-1, :-1].reshape(-1, 3)
    np.testing.assert_allclose(np.abs(inner), np.tile([0.0, 0.0, 1.0], (inner.shape[0], 1)), atol=1e-12)
    assert np.all(np.isnan(nmap[-1]))


@pytest.mark.parametrize("blocks", [1, 96, 512])
def test_identical_frames_give_identity(blocks):
    aligner = CpuIcpAligner(small_intrinsics(), ICP_CFG)
    depth = wavy_depth()
    aligner.init_model(depth)
    aligner.init_observation(depth)
    T = aligner.refine(np.eye(4), LaunchConfig(threads=224, blocks=blocks))
    assert is_rigid(T)
    np.testing.assert_allclose(T, np.eye(4), atol=1e-6)
    assert aligner.last_stats["level"] == 0
    assert aligner.last_stats["num_corr"] >= 20
    assert aligner.last_stats["residual_rms"] < 1e-9


def test_flat_wall_is_degenerate():
    aligner = CpuIcpAligner(small_intrinsics(), ICP_CFG)
    depth = np.full((H, W), 1200, np.uint16)
    aligner.init_model(depth)
    aligner.init_observation(depth)
    with pytest.raises(AlignmentError):
        aligner.refine(np.eye(4), LaunchConfig(224, 96))


def test_empty_depth_has_no_correspondences():
    aligner = CpuIcpAligner(small_intrinsics(), ICP_CFG)
    aligner.init_model(np.zeros((H, W), np.uint16))
    aligner.init_observation(np.zeros((H, W), np.uint16))
    with pytest.raises(AlignmentError, match="too few correspondences"):
        aligner.refine(np.eye(4), LaunchConfig(224, 96))


def test_refine_before_init():
    with pytest.raises(AlignmentError):
        CpuIcpAligner(small_intrinsics()).refine(np.eye(4), LaunchConfig(224, 96))


def test_non_rigid_guess_rejected():
    aligner = CpuIcpAligner(small_intrinsics(), ICP_CFG)
    aligner.init_model(wavy_depth())
    aligner.init_observation(wavy_depth())
    with pytest.raises(AlignmentError):
        aligner.refine(np.diag([2.0, 1.0, 1.0, 1.0]), LaunchConfig(224, 96))


def test_shape_mismatch():
    aligner = CpuIcpAligner(small_intrinsics())
    with pytest.raises(ValueError):
        aligner.init_model(np.zeros((10, 10), np.uint16))


def test_pyramid_intrinsics():
    intr = CameraIntrinsics(width=640, height=480, fx=500.0, fy=400.0, cx=320.0, cy=240.0)
    s = intr.scaled(2)
    assert (s.width, s.height) == (160, 120)
    assert (s.fx, s.fy, s.cx, s.cy) == (125.0, 100.0, 80.0, 60.0)


def test_recovers_depth_offset():
    # observation seen 2 cm farther away: current points map 2 cm closer into the model frame
    aligner = CpuIcpAligner(small_intrinsics(), {"iterations": [10, 5, 4], "min_correspondences": 20})
    aligner.init_model(wavy_depth())
    aligner.init_observation(wavy_depth() + np.uint16(20))
    T = aligner.refine(np.eye(4), LaunchConfig(224, 96))
    assert is_rigid(T)
    assert -0.03 < T[2, 3] < -0.01
    assert np.linalg.norm(T[:3, 3]) < 0.04


def test_failed_refine_clears_stats():
    aligner = CpuIcpAligner(small_intrinsics(), ICP_CFG)
    aligner.init_model(wavy_depth())
    aligner.init_observation(wavy_depth())
    aligner.refine(np.eye(4), LaunchConfig(224, 96))
    assert aligner.last_stats

    flat = np.full((H, W), 1200, np.uint16)
    aligner.init_model(flat)
    aligner.init_observation(flat)
    with pytest.raises(AlignmentError):
        aligner.refine(np.eye(4), LaunchConfig(224, 96))
    assert aligner.last_stats == {}
