from __future__ import annotations

import json
from pathlib import Path

import pytest
import torch

from ffcapture.feedforward import runner
from ffcapture.feedforward.config import SHAPE_PRESETS, CompareConfig, ModelShape, QuantConfig
from ffcapture.feedforward.export import validate_results_schema
from ffcapture.feedforward.layers import FeedForward, QuantizedFeedForward
from ffcapture.profiling import capture as trace_capture

SMOKE = SHAPE_PRESETS["smoke"]


def _config(**kw) -> CompareConfig:
    base = dict(shape=SMOKE, dtype_key="fp32", device="cpu", capture=False)
    base.update(kw)
    return CompareConfig(**base)


def _parse_line(out: str) -> tuple[float, float]:
    lines = out.splitlines()
    assert len(lines) == 1
    mean_s, max_s = lines[0].split(" ")
    return float(mean_s), float(max_s)


def test_compare_run_prints_two_floats_and_writes_results(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    out_dir = tmp_path / "run"
    rc = runner.compare_run(out_dir=out_dir, config=_config(), run_id="t1")
    assert rc == 0

    captured = capsys.readouterr()
    mean_diff, max_abs = _parse_line(captured.out)
    assert max_abs >= abs(mean_diff)
    assert "independent random weights" in captured.err

    results = json.loads((out_dir / "results.json").read_text())
    validate_results_schema(results)
    assert results["run"]["status"] == "pass"
    assert results["run"]["run_id"] == "t1"
    assert [r["variant"] for r in results["records"]] == ["dense", "quantized"]
    assert all(r["output_shape"] == [SMOKE.rows, SMOKE.dim] for r in results["records"])
    assert all(r["capture"] is None for r in results["records"])
    assert results["comparison"]["weights_shared"] is False
    assert (out_dir / "report.md").exists()


def test_compare_run_is_reproducible_for_a_seed(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    runner.compare_run(out_dir=tmp_path / "a", config=_config(seed=3))
    first = capsys.readouterr().out
    runner.compare_run(out_dir=tmp_path / "b", config=_config(seed=3))
    second = capsys.readouterr().out
    assert first == second


def test_shared_weights_error_stays_within_quantization_bound(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _config(shared_weights=True, weight_std=0.05, input_std=1.0, quant=QuantConfig(group_size=32, bits=8))
    rc = runner.compare_run(out_dir=tmp_path / "shared", config=cfg)
    assert rc == 0
    _mean, shared_max = _parse_line(capsys.readouterr().out)

    cfg_indep = _config(shared_weights=False, weight_std=0.05, input_std=1.0, quant=QuantConfig(group_size=32, bits=8))
    runner.compare_run(out_dir=tmp_path / "indep", config=cfg_indep)
    _mean, indep_max = _parse_line(capsys.readouterr().out)

    # Independent weights swamp the quantization error.
    assert shared_max < indep_max / 10


def test_tolerance_failure_returns_1(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    out_dir = tmp_path / "tol"
    rc = runner.compare_run(out_dir=out_dir, config=_config(max_abs_tol=0.0, weight_std=0.05, input_std=1.0))
    assert rc == 1
    capsys.readouterr()
    results = json.loads((out_dir / "results.json").read_text())
    assert results["run"]["status"] == "fail"
    assert "exceeds tolerance" in results["run"]["failure_reason"]
    assert results["comparison"]["within_tolerance"] is False


def test_existing_run_dir_is_not_overwritten(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    out_dir = tmp_path / "run"
    assert runner.compare_run(out_dir=out_dir, config=_config()) == 0
    assert runner.compare_run(out_dir=out_dir, config=_config()) == 2
    assert "Refusing to overwrite" in capsys.readouterr().err


def test_bad_quant_layout_fails_prereqs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _config(shape=ModelShape(dim=96, hidden_dim=512, rows=2))
    assert runner.compare_run(out_dir=tmp_path / "bad", config=cfg) == 2
    assert "quant_layout" in capsys.readouterr().err
    assert not (tmp_path / "bad" / "results.json").exists()


def test_library_failure_is_recorded_then_raised(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _boom(self: QuantizedFeedForward, x: torch.Tensor) -> torch.Tensor:
        raise RuntimeError("mat1 and mat2 shapes cannot be multiplied")

    monkeypatch.setattr(QuantizedFeedForward, "forward", _boom)
    out_dir = tmp_path / "boom"
    with pytest.raises(RuntimeError):
        runner.compare_run(out_dir=out_dir, config=_config())

    results = json.loads((out_dir / "results.json").read_text())
    assert results["run"]["status"] == "fail"
    assert results["run"]["failure_reason"].startswith("RuntimeError:")
    assert [r["variant"] for r in results["records"]] == ["dense"]
    assert results["comparison"] is None


def test_compare_outputs_statistics() -> None:
    dense = torch.zeros(2, 2)
    quant = torch.tensor([[1.0, -3.0], [0.0, 0.0]])
    cmp = runner.compare_outputs(dense, quant, weights_shared=True)
    assert cmp.mean_diff == pytest.approx(-0.5)
    assert cmp.max_abs_diff == pytest.approx(3.0)
    assert cmp.to_line() == "-0.5 3"


def test_build_models_shared_weights_quantizes_dense() -> None:
    cfg = _config(shared_weights=True)
    ff, qff = runner.build_models(cfg, dtype=torch.float32, device=torch.device("cpu"), generator=torch.Generator().manual_seed(0))
    assert isinstance(ff, FeedForward)
    assert qff.w1.shape == (SMOKE.hidden_dim, SMOKE.dim)
    assert qff.w2.shape == (SMOKE.dim, SMOKE.hidden_dim)


@pytest.mark.skipif(not trace_capture.capture_available(), reason="torch built without Kineto")
def test_compare_run_captures_each_variant_separately(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    out_dir = tmp_path / "cap"
    rc = runner.compare_run(out_dir=out_dir, config=_config(capture=True))
    assert rc == 0
    capsys.readouterr()

    for case_id in ("ff", "qff"):
        trace = out_dir / "captures" / case_id / "trace.json"
        data = json.loads(trace.read_text())
        names = {ev.get("name") for ev in data.get("traceEvents", [])}
        assert f"{case_id}.forward" in names
        other = "qff" if case_id == "ff" else "ff"
        assert f"{other}.forward" not in names
        assert (out_dir / "captures" / case_id / "meta.json").exists()
    assert not trace_capture.is_capturing()


@pytest.mark.skipif(not trace_capture.capture_available(), reason="torch built without Kineto")
def test_capture_dir_override(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cap_dir = tmp_path / "traces"
    runner.compare_run(out_dir=tmp_path / "run", config=_config(capture=True, capture_output_dir=cap_dir))
    capsys.readouterr()
    assert (cap_dir / "ff" / "trace.json").exists()
    assert (cap_dir / "qff" / "trace.json").exists()
