import numpy as np
import pytest

from nextwordpredict.runtime import window_attention, scatter_present, MASK_ATTEND, MASK_IGNORE
from nextwordpredict.onnx_runtime import OnnxModelRuntime
from nextwordpredict.exceptions import (CacheShapeMismatchException, InvalidLanguageModelException,
                                        ModelUnavailableException)

from conftest import FakeRuntime


def test_name():
    assert FakeRuntime.name() == "FAKERUNTIME"
    assert OnnxModelRuntime.name() == "ONNX"


# The empty slot at the current position is skipped, the new token is appended
def test_window_attention():
    mask = np.array([MASK_ATTEND, MASK_ATTEND, MASK_ATTEND, MASK_IGNORE], dtype=np.float32)
    attention = window_attention(mask, 2)
    assert attention.dtype == np.int64
    assert attention.tolist() == [1, 1, 0, 0, 1]
    # mask itself is left alone
    assert mask[2] == MASK_ATTEND


def test_scatter_present():
    past = np.zeros((1, 2, 4, 3), dtype=np.float32)
    past[:, :, 0, :] = 1.0
    present = np.concatenate([past, np.full((1, 2, 1, 3), 7.0, dtype=np.float32)], axis=2)
    out = np.zeros_like(past)
    scatter_present(past, present, 1, out)
    assert np.all(out[:, :, 0, :] == 1.0)
    assert np.all(out[:, :, 1, :] == 7.0)
    assert np.all(out[:, :, 2:, :] == 0.0)


def test_write_input_size_mismatch(runtime):
    with pytest.raises(CacheShapeMismatchException):
        runtime.write_input(0, [1, 2])
    runtime.write_input(0, [42])
    assert runtime.read_input(0).shape == (1, 1)
    assert runtime.read_input(0)[0, 0] == 42


def test_zero_inputs(runtime):
    runtime.inputs[3][...] = 5.0
    runtime.zero_inputs()
    assert all(not buffer.any() for buffer in runtime.inputs)


def test_run_before_load():
    with pytest.raises(ModelUnavailableException):
        FakeRuntime().run()


def test_close(runtime):
    runtime.close()
    assert not runtime.is_loaded


def test_onnx_bogus_model():
    runtime = OnnxModelRuntime(model_path="bogus.onnx", context_window=8)
    with pytest.raises(InvalidLanguageModelException):
        runtime.load()
    assert not runtime.is_loaded
