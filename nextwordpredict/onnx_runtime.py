from typing import List
import numpy as np
import onnxruntime as ort

from nextwordpredict.runtime import ModelRuntime, window_attention, scatter_present
from nextwordpredict.slots import CACHE_IN_PATTERN, CACHE_OUT_PATTERN
from nextwordpredict.exceptions import InvalidLanguageModelException

# ONNX element type strings we can hold in buffers
ONNX_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
}


class OnnxModelRuntime(ModelRuntime):
    """Runs an exported decoder through a compiled ONNX Runtime session over fixed-window buffers.

    The session is expected to take input_ids, attention_mask, optionally position_ids, and
    past_key_values.<layer>.key|value, and to return logits plus present.<layer>.key|value.
    """

    def __init__(self,
                 model_path: str,
                 context_window: int = 2048,
                 providers: List[str] = None):
        super().__init__(context_window=context_window)
        self.model_path = model_path
        self.providers = providers if providers else ["CPUExecutionProvider"]
        self.session = None
        self.session_inputs = set()
        self.session_outputs: List[str] = []

    def load(self) -> None:
        """
            Create the inference session and allocate buffers from its declared inputs
        """
        try:
            self.session = ort.InferenceSession(self.model_path, providers=self.providers)
        except BaseException:
            raise InvalidLanguageModelException(f"{self.model_path} is not a valid ONNX model file.")

        self.input_names = ["input_ids", "position_ids", "attention_mask"]
        self.inputs = [np.zeros((1, 1), dtype=np.int64),
                       np.zeros((1, 1), dtype=np.int64),
                       np.zeros((1, self.context_window), dtype=np.float32)]
        self.output_names = ["logits"]
        self.outputs = [None]

        cache_shapes = {}
        for node in self.session.get_inputs():
            self.session_inputs.add(node.name)
            if CACHE_IN_PATTERN.match(node.name):
                shape = self._window_shape(node)
                self.input_names.append(node.name)
                self.inputs.append(np.zeros(shape, dtype=ONNX_DTYPES.get(node.type, np.float32)))
                cache_shapes[node.name] = shape
        if "input_ids" not in self.session_inputs or "attention_mask" not in self.session_inputs:
            raise InvalidLanguageModelException(
                f"{self.model_path} does not take input_ids and attention_mask inputs.")

        for node in self.session.get_outputs():
            self.session_outputs.append(node.name)
            if node.name == "logits":
                vocab_size = node.shape[-1]
                if not isinstance(vocab_size, int):
                    raise InvalidLanguageModelException(f"{self.model_path} has a symbolic vocabulary size.")
                self.outputs[0] = np.zeros(vocab_size, dtype=np.float32)
            elif CACHE_OUT_PATTERN.match(node.name):
                past_name = node.name.replace("present.", "past_key_values.", 1)
                self.output_names.append(node.name)
                self.outputs.append(np.zeros(cache_shapes.get(past_name, self._window_shape(node)),
                                             dtype=ONNX_DTYPES.get(node.type, np.float32)))
        if self.outputs[0] is None:
            raise InvalidLanguageModelException(f"{self.model_path} has no logits output.")
        print(f"ONNX runtime: model = '{self.model_path}', inputs = {len(self.inputs)}, "
              f"outputs = {len(self.outputs)}, window = {self.context_window}")

    def _window_shape(self, node) -> tuple:
        """Cache shape with the batch fixed to 1 and the sequence axis set to the context window"""
        shape = list(node.shape)
        if len(shape) != 4 or not isinstance(shape[1], int) or not isinstance(shape[3], int):
            raise InvalidLanguageModelException(
                f"Cache tensor {node.name} needs static heads and head size, got {shape}")
        return 1, shape[1], self.context_window, shape[3]

    def _forward(self) -> None:
        position = int(self.inputs[1].reshape(-1)[0])
        feed = {"input_ids": self.inputs[0],
                "attention_mask": window_attention(self.inputs[2], position)[np.newaxis, :]}
        if "position_ids" in self.session_inputs:
            feed["position_ids"] = self.inputs[1]
        for name, buffer in zip(self.input_names[3:], self.inputs[3:]):
            feed[name] = buffer

        results = dict(zip(self.session_outputs, self.session.run(self.session_outputs, feed)))
        logits = results["logits"].reshape(-1, self.outputs[0].size)
        self.outputs[0][:] = logits[-1]
        for i, name in enumerate(self.output_names[1:], start=1):
            past = self.inputs[self.input_names.index(name.replace("present.", "past_key_values.", 1))]
            scatter_present(past, results[name], position, self.outputs[i])

    def close(self) -> None:
        super().close()
        self.session = None
        self.session_inputs = set()
        self.session_outputs = []
