"""Command-line entry point."""

import sys

import numpy as np

import main
from vgicp import PointCloud, VGICPRegistration


class TestMain:

    def test_registers_files(self, corner_points, tmp_path, monkeypatch):
        target_path = tmp_path / "target.ply"
        source_path = tmp_path / "source.ply"
        result_path = tmp_path / "result.pkl"
        PointCloud(corner_points).save(target_path)
        PointCloud(corner_points + [0.2, 0.0, 0.0]).save(source_path)

        monkeypatch.setattr(sys, 'argv', [
            'main.py', str(source_path), str(target_path),
            '--k', '10', '--jobs', '1', '--save', str(result_path),
        ])

        assert main.main() == 0
        saved = VGICPRegistration.load_result(result_path)
        np.testing.assert_allclose(saved['transformation'][:3, 3], [-0.2, 0.0, 0.0], atol=5e-3)

    def test_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, 'argv', [
            'main.py', str(tmp_path / "a.ply"), str(tmp_path / "b.ply"),
        ])
        assert main.main() == 1

    def test_save_reported_once(self, corner_points, tmp_path, monkeypatch, capsys):
        path = tmp_path / "cloud.ply"
        result_path = tmp_path / "result.pkl"
        PointCloud(corner_points).save(path)
        monkeypatch.setattr(sys, 'argv', [
            'main.py', str(path), str(path), '--k', '10', '--jobs', '1',
            '--save', str(result_path), '--verbose',
        ])

        main.main()

        assert capsys.readouterr().out.count("Results saved to") == 1
