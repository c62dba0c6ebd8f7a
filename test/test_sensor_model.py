"""
test_sensor_model.py - LidarModel 射线投射增益测试
"""

import math

import numpy as np
import pytest

from glocal_planner.mapping import VoxelGridMap, VoxelState
from glocal_planner.models import LidarModelConfig, VoxelGridMapConfig, WayPoint
from glocal_planner.sensor_model import LidarModel


@pytest.fixture
def unknown_map():
    """4 x 4 x 2 m，全部未知"""
    return VoxelGridMap(VoxelGridMapConfig(
        voxel_size=0.1, origin=[0.0, 0.0, 0.0], dimensions=[40, 40, 20]))


@pytest.fixture
def lidar_config():
    return LidarModelConfig(
        ray_length=1.0,
        vertical_fov=20.0,
        horizontal_fov=60.0,
        vertical_resolution=3,
        horizontal_resolution=8,
    )


POSE = WayPoint(2.0, 2.0, 1.0, yaw=0.0)


class TestLidarModel:

    def test_ray_count(self, unknown_map, lidar_config):
        model = LidarModel(unknown_map, lidar_config)
        assert len(model.get_ray_directions(POSE)) == 24

    def test_downsampling(self, unknown_map):
        cfg = LidarModelConfig(vertical_resolution=4, horizontal_resolution=8,
                               downsampling_factor=2.0)
        model = LidarModel(unknown_map, cfg)
        assert len(model.get_ray_directions(POSE)) == 16

    def test_unit_directions(self, unknown_map, lidar_config):
        model = LidarModel(unknown_map, lidar_config)
        dirs = model.get_ray_directions(WayPoint(yaw=1.0))
        np.testing.assert_allclose(np.linalg.norm(dirs, axis=1), 1.0)

    def test_gain_in_unknown_space(self, unknown_map, lidar_config):
        model = LidarModel(unknown_map, lidar_config)
        assert model.compute_gain(POSE) > 0

    def test_known_space_no_gain(self, unknown_map, lidar_config):
        unknown_map.fill(VoxelState.FREE)
        model = LidarModel(unknown_map, lidar_config)
        assert model.compute_gain(POSE) == 0.0

    def test_field_of_view_follows_yaw(self, unknown_map, lidar_config):
        model = LidarModel(unknown_map, lidar_config)
        origin_ix = unknown_map.voxel_index(POSE.position)[0]

        ahead = model.get_visible_unknown_voxels(POSE)
        assert all(ix >= origin_ix for ix, _, _ in ahead)

        behind = model.get_visible_unknown_voxels(WayPoint(2.0, 2.0, 1.0, yaw=math.pi))
        assert all(ix <= origin_ix for ix, _, _ in behind)

    def test_occlusion(self, unknown_map, lidar_config):
        model = LidarModel(unknown_map, lidar_config)
        open_gain = model.compute_gain(POSE)
        unknown_map.add_obstacle([2.3, 0.0, 0.0], [2.4, 4.0, 2.0])
        assert model.compute_gain(POSE) < open_gain
        for ix, _, _ in model.get_visible_unknown_voxels(POSE):
            assert ix < 23

    def test_voxel_centers(self, unknown_map, lidar_config):
        model = LidarModel(unknown_map, lidar_config)
        centers = model.get_visible_voxel_centers(POSE)
        assert len(centers) == model.compute_gain(POSE)
        for c in centers:
            assert np.linalg.norm(c - POSE.position) <= lidar_config.ray_length + 0.1
