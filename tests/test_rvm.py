"""Tests for the RVM model runner: config, recurrent state and loading."""

import numpy as np
import pytest
import torch

from conftest import FailingMatting, TinyMatting
from matting.rvm import (
    InferenceError,
    ModelLoadError,
    RecurrentState,
    RVMSession,
    SegmentationConfig,
    load,
)


class TestSegmentationConfig:

    def test_defaults(self):
        cfg = SegmentationConfig()
        assert cfg.mode == "default"
        assert cfg.state_index == 1
        assert 0 < cfg.ratio <= 1

    @pytest.mark.parametrize("ratio", [0, -0.1, 1.5])
    def test_ratio_out_of_range(self, ratio):
        with pytest.raises(ValueError):
            SegmentationConfig(ratio=ratio)

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            SegmentationConfig(mode="sepia")

    def test_state_index_range(self):
        with pytest.raises(ValueError):
            SegmentationConfig(state_index=5)


class TestRecurrentState:

    def test_zero_baseline(self):
        state = RecurrentState.zeros()
        assert state.is_zero()
        assert state.tensor_count() == 0

    def test_indexing(self):
        r = [torch.zeros(1) for _ in range(4)]
        state = RecurrentState(*r)
        assert state[3] is r[2]
        with pytest.raises(IndexError):
            state[0]


class TestPredict:
    """Recurrent-state bookkeeping around RVMSession.predict."""

    def test_input_normalization(self, session, rgb_frame):
        src = session.to_input(rgb_frame)
        assert src.shape == (1, 3, 48, 64)
        assert src.dtype == torch.float32
        assert float(src.max()) == pytest.approx(220 / 255)
        assert float(src.min()) == pytest.approx(40 / 255)

    def test_first_predict_starts_from_zero_baseline(self, session, rgb_frame, config):
        assert session.live_tensors() == 0
        prediction = session.predict(rgb_frame, config)
        assert prediction.fgr.shape == (1, 3, 48, 64)
        assert prediction.pha.shape == (1, 1, 48, 64)
        assert session.live_tensors() == 4
        # one step from the baseline
        assert torch.all(session.state.r1 == 1)

    def test_state_is_carried_between_frames(self, session, rgb_frame, config):
        for _ in range(3):
            session.predict(rgb_frame, config)
        for i in range(1, 5):
            assert torch.all(session.state[i] == 3)
        assert session.frames == 3

    def test_ratio_change_resets_state_before_inference(self, session, rgb_frame, config):
        """A new downsample ratio feeds the zero baseline into the next call."""
        session.predict(rgb_frame, config)
        session.predict(rgb_frame, config)
        assert torch.all(session.state.r4 == 2)

        config.ratio = 0.25
        session.predict(rgb_frame, config)
        assert session.ratio == 0.25
        for i in range(1, 5):
            assert torch.all(session.state[i] == 1)
        # state resolution follows the new ratio
        assert session.state.r1.shape[-2:] == (12, 16)

    def test_same_ratio_keeps_state(self, session, rgb_frame):
        session.predict(rgb_frame, SegmentationConfig(model_path="unused", ratio=0.5))
        session.predict(rgb_frame, SegmentationConfig(model_path="unused", ratio=0.5, mode="alpha"))
        assert torch.all(session.state.r2 == 2)

    def test_reset(self, session, rgb_frame, config):
        session.predict(rgb_frame, config)
        session.reset()
        assert session.state.is_zero()
        assert session.ratio == 0.5
        session.reset(ratio=0.75)
        assert session.ratio == 0.75

    def test_segment_returns_rgba(self, session, rgb_frame, config):
        rgba = session.segment(rgb_frame, config)
        assert rgba.shape == (48, 64, 4)
        assert rgba.dtype == np.uint8

    def test_segment_state_mode(self, session, rgb_frame):
        cfg = SegmentationConfig(model_path="unused", ratio=0.5, mode="state", state_index=1)
        tile = session.segment(rgb_frame, cfg)
        # r1: 16 channels at 24x32 -> 96x128 tile
        assert tile.shape == (96, 128, 4)

    def test_inference_error(self, rgb_frame, config):
        session = RVMSession(FailingMatting(), torch.device("cpu"), ratio=0.5)
        with pytest.raises(InferenceError):
            session.predict(rgb_frame, config)
        assert session.state.is_zero()


class TestLoad:
    """Model loading by path."""

    def test_missing_model(self, tmp_path):
        cfg = SegmentationConfig(model_path=str(tmp_path / "nope.torchscript"))
        with pytest.raises(ModelLoadError):
            load(cfg, torch.device("cpu"))

    def test_corrupt_model(self, tmp_path):
        path = tmp_path / "broken.torchscript"
        path.write_bytes(b"not a model")
        with pytest.raises(ModelLoadError):
            load(SegmentationConfig(model_path=str(path)), torch.device("cpu"))

    def test_torchscript_file(self, tmp_path, rgb_frame):
        path = tmp_path / "tiny.torchscript"
        torch.jit.script(TinyMatting()).save(str(path))
        session = load(SegmentationConfig(model_path=str(path), ratio=0.25), torch.device("cpu"))
        assert session.ratio == 0.25
        assert session.state.is_zero()
        prediction = session.predict(rgb_frame, SegmentationConfig(model_path=str(path), ratio=0.25))
        assert prediction.pha.shape == (1, 1, 48, 64)
        assert session.live_tensors() == 4

    def test_release_artifact_is_downloaded(self, tmp_path, monkeypatch):
        """Known release names are fetched into place before loading."""
        target = tmp_path / "models" / "rvm_mobilenetv3_fp32.torchscript"
        fetched = []

        def fake_urlretrieve(url, filename):
            fetched.append(url)
            torch.jit.script(TinyMatting()).save(filename)

        monkeypatch.setattr("matting.rvm.urllib.request.urlretrieve", fake_urlretrieve)
        session = load(SegmentationConfig(model_path=str(target)), torch.device("cpu"))
        assert fetched and fetched[0].endswith("rvm_mobilenetv3_fp32.torchscript")
        assert target.exists()
        assert session.model is not None

    def test_download_failure(self, tmp_path, monkeypatch):
        def fail(url, filename):
            raise OSError("offline")

        monkeypatch.setattr("matting.rvm.urllib.request.urlretrieve", fail)
        target = tmp_path / "rvm_resnet50_fp32.torchscript"
        with pytest.raises(ModelLoadError):
            load(SegmentationConfig(model_path=str(target)), torch.device("cpu"))
