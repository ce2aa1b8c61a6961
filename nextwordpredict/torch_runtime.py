import torch
import numpy as np
from transformers import AutoModelForCausalLM, DynamicCache
from peft import AutoPeftModelForCausalLM

from nextwordpredict.runtime import ModelRuntime, window_attention, scatter_present
from nextwordpredict.exceptions import InvalidLanguageModelException


class TorchModelRuntime(ModelRuntime):
    """Runs a Hugging Face causal language model eagerly in PyTorch over fixed-window buffers."""

    def __init__(self,
                 lang_model_name: str,
                 lm_path: str = None,
                 lm_device: str = "cpu",
                 fp16: bool = False,
                 lora_path: str = "",
                 context_window: int = 2048,
                 ):
        """
        Initialize instance variables, the model itself is loaded by load()
        Args:
            lang_model_name    - name of the Hugging Face casual language model to load
            lm_path            - load fine-tuned model from specified directory
            lm_device          - device to use for making predictions (cpu, mps, or cuda)
            fp16               - convert model to fp16 to save memory/compute on CUDA
            lora_path          - load LoRA adapter from Hugging Face or local directory
            context_window     - number of positions in each key/value cache buffer
        """
        super().__init__(context_window=context_window)
        self.model = None
        self.device = lm_device
        self.fp16 = fp16
        self.lora_path = lora_path

        # We optionally load the model from a local directory, but if this is not
        # specified, we load a Hugging Face model
        self.model_name = lang_model_name
        self.model_dir = lm_path if lm_path else self.model_name

        self.num_layers = 0
        self.num_kv_heads = 0
        self.head_dim = 0
        self.vocab_size = 0

    def load(self) -> None:
        """
            Load the model and allocate the buffers described by its config
        """
        try:
            if self.lora_path:
                self.model = AutoPeftModelForCausalLM.from_pretrained(self.lora_path)
            else:
                self.model = AutoModelForCausalLM.from_pretrained(self.model_dir)
            if self.fp16 and self.device == "cuda":
                self.model = self.model.half()
        except BaseException:
            raise InvalidLanguageModelException(
                f"{self.model_dir} is not a valid local folder or model identifier on HuggingFace.")

        self.model.eval()
        self.model.to(self.device)

        # Multimodal configs keep the decoder settings in a nested text config
        config = getattr(self.model.config, "text_config", None) or self.model.config
        self.num_layers = config.num_hidden_layers
        self.num_kv_heads = getattr(config, "num_key_value_heads", None) or config.num_attention_heads
        self.head_dim = getattr(config, "head_dim", None) or config.hidden_size // config.num_attention_heads
        self.vocab_size = config.vocab_size
        self._allocate()
        print(f"Torch runtime: model = '{self.model_dir}', layers = {self.num_layers}, "
              f"kv heads = {self.num_kv_heads}, head dim = {self.head_dim}, window = {self.context_window}")

    def _allocate(self) -> None:
        """Create the buffers using the exported decoder naming convention"""
        cache_shape = (1, self.num_kv_heads, self.context_window, self.head_dim)
        self.input_names = ["input_ids", "position_ids", "attention_mask"]
        self.inputs = [np.zeros((1, 1), dtype=np.int64),
                       np.zeros((1, 1), dtype=np.int64),
                       np.zeros((1, self.context_window), dtype=np.float32)]
        self.output_names = ["logits"]
        self.outputs = [np.zeros(self.vocab_size, dtype=np.float32)]
        for layer in range(self.num_layers):
            for kind in ("key", "value"):
                self.input_names.append(f"past_key_values.{layer}.{kind}")
                self.inputs.append(np.zeros(cache_shape, dtype=np.float32))
                self.output_names.append(f"present.{layer}.{kind}")
                self.outputs.append(np.zeros(cache_shape, dtype=np.float32))

    def _forward(self) -> None:
        position = int(self.inputs[1].reshape(-1)[0])
        attention = window_attention(self.inputs[2], position)
        dtype = torch.float16 if (self.fp16 and self.device == "cuda") else torch.float32

        cache = DynamicCache()
        for layer in range(self.num_layers):
            key = torch.from_numpy(self.inputs[3 + 2 * layer]).to(self.device, dtype)
            value = torch.from_numpy(self.inputs[4 + 2 * layer]).to(self.device, dtype)
            cache.update(key, value, layer)

        with torch.inference_mode():
            out = self.model(input_ids=torch.from_numpy(self.inputs[0]).to(self.device),
                             position_ids=torch.from_numpy(self.inputs[1]).to(self.device),
                             attention_mask=torch.from_numpy(attention[np.newaxis, :]).to(self.device),
                             past_key_values=cache,
                             use_cache=True)

            # Upcast for numerical stability
            logits = out.logits[0, -1, :].float().cpu().numpy()
            # The model head may be padded beyond the configured vocab
            self.outputs[0][:] = logits[:self.vocab_size]

            for layer in range(self.num_layers):
                key, value = _layer_tensors(out.past_key_values, layer)
                scatter_present(self.inputs[3 + 2 * layer], key.float().cpu().numpy(), position,
                                self.outputs[1 + 2 * layer])
                scatter_present(self.inputs[4 + 2 * layer], value.float().cpu().numpy(), position,
                                self.outputs[2 + 2 * layer])

    def close(self) -> None:
        super().close()
        self.model = None

    def get_num_parameters(self) -> int:
        """
            Find out how many parameters the loaded model has
        Args:
        Response:
            Integer number of parameters in the transformer model
        """
        return sum(p.numel() for p in self.model.parameters())


def _layer_tensors(cache, layer: int):
    """Key and value tensors for one layer of a returned cache"""
    # Newer transformers releases keep per-layer objects, older ones index as (key, value) tuples
    if hasattr(cache, "layers"):
        return cache.layers[layer].keys, cache.layers[layer].values
    return cache[layer]
