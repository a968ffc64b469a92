import numpy as np
import pytest
from PIL import Image

from galaxy_synth import render
from galaxy_synth.params import ParameterError


def test_tone_map_identity_settings():
    img = np.array([[[0.0, 0.5, 1.0], [2.0, -1.0, 0.25]]], dtype=np.float32)
    out = render.tone_map(img, exposure=1.0, gamma=1.0, saturation=1.0)
    assert out.dtype == np.uint8
    assert out.tolist() == [[[0, 127, 255], [255, 0, 63]]]


def test_tone_map_exposure_and_gamma():
    img = np.full((1, 1, 3), 0.25, dtype=np.float32)
    assert render.tone_map(img, exposure=0.5, gamma=1.0, saturation=1.0)[0, 0, 0] == 127
    assert render.tone_map(img, exposure=1.0, gamma=0.5, saturation=1.0)[0, 0, 0] == 127


def test_tone_map_zero_saturation_is_grey():
    img = np.array([[[0.9, 0.3, 0.0]]], dtype=np.float32)
    out = render.tone_map(img, exposure=1.0, gamma=1.0, saturation=0.0)
    assert out[0, 0, 0] == out[0, 0, 1] == out[0, 0, 2]


def test_parse_overrides():
    overrides = render.parse_overrides(["spiral-arms=3", "density_factor = 0.8", "sun_position=1,2,3"])
    assert overrides == {"spiral_arms": 3, "density_factor": 0.8, "sun_position": (1.0, 2.0, 3.0)}


@pytest.mark.parametrize("item", ["spiral_arms", "spiral_arms=two", "warp=1", "sun_position=1,2"])
def test_parse_overrides_rejects(item):
    with pytest.raises(ParameterError):
        render.parse_overrides([item])


def test_main_writes_frames(tmp_path, capsys):
    out_dir = tmp_path / "frames"
    code = render.main(
        [
            "--no-volume",
            "--width", "24",
            "--height", "16",
            "--frames", "2",
            "--seed", "7",
            "--set", "num_stars=200",
            "--set", "background_star_count=50",
            "--output-dir", str(out_dir),
        ]
    )
    assert code == 0
    frames = sorted(out_dir.glob("frame_*.png"))
    assert [p.name for p in frames] == ["frame_0000.png", "frame_0001.png"]
    with Image.open(frames[0]) as img:
        assert img.size == (24, 16)
        assert img.mode == "RGB"
    captured = capsys.readouterr().out
    assert "Generated" in captured
    assert "Summary: wrote 2 frame(s)" in captured


def test_main_rejects_bad_override(tmp_path, capsys):
    code = render.main(["--no-volume", "--set", "spiral_arms=0", "--output-dir", str(tmp_path)])
    assert code == 2
    assert "[ERROR]" in capsys.readouterr().err
    assert not list(tmp_path.glob("*.png"))


def test_main_rejects_bad_frame_size(tmp_path):
    assert render.main(["--no-volume", "--width", "0", "--output-dir", str(tmp_path)]) == 2


class IdleService:
    field = None

    def request_build(self, request):
        return 1

    def wait(self, timeout=None):
        return None

    def close(self):
        pass


def test_main_warms_kernels_before_volume_builds(tmp_path, monkeypatch, capsys):
    calls = []
    monkeypatch.setattr(render.SimplexNoise, "warmup", classmethod(lambda cls: calls.append("warmup")))

    real_scene = render.GalaxyScene

    def scene_factory(params, **kwargs):
        calls.append("scene")
        return real_scene(params, seed=kwargs.get("seed"), field_service=IdleService(), num_clusters=4)

    monkeypatch.setattr(render, "GalaxyScene", scene_factory)
    code = render.main(
        ["--width", "8", "--height", "8", "--set", "num_stars=50", "--set", "background_star_count=10",
         "--output-dir", str(tmp_path)]
    )
    assert code == 0
    assert calls == ["warmup", "scene"]
    assert "[WARN]" in capsys.readouterr().out


def test_stars_only_run_skips_warmup(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(render.SimplexNoise, "warmup", classmethod(lambda cls: calls.append("warmup")))
    assert render.main(["--no-volume", "--width", "8", "--height", "8", "--set", "num_stars=20",
                        "--output-dir", str(tmp_path)]) == 0
    assert calls == []
