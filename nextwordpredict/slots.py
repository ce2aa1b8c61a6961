"""Maps logical tensor roles onto the buffer indexes exposed by a model runtime."""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from nextwordpredict.exceptions import InvalidSlotException

TOKEN_NAME = "input_ids"
POSITION_NAME = "position_ids"
MASK_NAME = "attention_mask"
LOGITS_NAME = "logits"

# Exported decoders name their caches past_key_values.<layer>.<kind> and present.<layer>.<kind>
CACHE_IN_PATTERN = re.compile(r"^past_key_values\.(\d+)\.(key|value)$")
CACHE_OUT_PATTERN = re.compile(r"^present\.(\d+)\.(key|value)$")


class SlotRole(Enum):
    """SlotRole
    Enumeration type for the logical role of a tensor buffer
    """

    TOKEN = 0
    POSITION = 1
    MASK = 2
    CACHE_IN = 3
    CACHE_OUT = 4
    LOGITS = 5


@dataclass(frozen=True)
class TensorSlot:
    """Handle to one runtime buffer. The runtime owns the memory, we only keep the index."""
    index: int
    role: SlotRole
    name: str = ""
    layer: Optional[int] = None


class CacheRotationMap:
    """Ordered (input slot, output slot) pairs, one per layer per key/value tensor.

    After every forward pass the content of each output slot is copied into its input slot.
    Fixed when the model is loaded.
    """

    def __init__(self, pairs: Sequence[Tuple[TensorSlot, TensorSlot]]):
        seen_inputs = set()
        seen_outputs = set()
        for input_slot, output_slot in pairs:
            if input_slot.role != SlotRole.CACHE_IN or output_slot.role != SlotRole.CACHE_OUT:
                raise InvalidSlotException(f"Rotation pair has wrong roles: {input_slot}, {output_slot}")
            if input_slot.index in seen_inputs:
                raise InvalidSlotException(f"Input buffer {input_slot.index} is refilled more than once")
            if output_slot.index in seen_outputs:
                raise InvalidSlotException(f"Output buffer {output_slot.index} feeds more than one input")
            seen_inputs.add(input_slot.index)
            seen_outputs.add(output_slot.index)
        self.pairs = tuple(pairs)

    def __iter__(self) -> Iterator[Tuple[TensorSlot, TensorSlot]]:
        return iter(self.pairs)

    def __len__(self) -> int:
        return len(self.pairs)


class SlotRegistry:
    """Fixed mapping from logical roles to runtime buffer indexes plus the cache rotation map."""

    def __init__(self,
                 token: TensorSlot,
                 position: TensorSlot,
                 mask: TensorSlot,
                 logits: TensorSlot,
                 rotation: CacheRotationMap):
        self.token = token
        self.position = position
        self.mask = mask
        self.logits = logits
        self.rotation = rotation

    @property
    def num_layers(self) -> int:
        layers = {input_slot.layer for input_slot, _ in self.rotation if input_slot.layer is not None}
        return len(layers)

    @classmethod
    def from_names(cls,
                   input_names: List[str],
                   output_names: List[str]) -> "SlotRegistry":
        """
        Discover the slots from the buffer names a runtime reports at load time.
        :param input_names: names of the input buffers, in runtime index order
        :param output_names: names of the output buffers, in runtime index order
        :return: SlotRegistry
        """
        token = cls._find(input_names, TOKEN_NAME, SlotRole.TOKEN)
        position = cls._find(input_names, POSITION_NAME, SlotRole.POSITION)
        mask = cls._find(input_names, MASK_NAME, SlotRole.MASK)
        logits = cls._find(output_names, LOGITS_NAME, SlotRole.LOGITS)

        outputs: Dict[Tuple[int, str], TensorSlot] = {}
        for i, name in enumerate(output_names):
            match = CACHE_OUT_PATTERN.match(name)
            if match:
                layer = int(match.group(1))
                outputs[(layer, match.group(2))] = TensorSlot(i, SlotRole.CACHE_OUT, name, layer)

        pairs = []
        for i, name in enumerate(input_names):
            match = CACHE_IN_PATTERN.match(name)
            if not match:
                continue
            key = (int(match.group(1)), match.group(2))
            if key not in outputs:
                raise InvalidSlotException(f"No output buffer refills cache input '{name}'")
            pairs.append((TensorSlot(i, SlotRole.CACHE_IN, name, key[0]), outputs.pop(key)))
        if outputs:
            raise InvalidSlotException(f"Cache outputs without a matching input: {sorted(s.name for s in outputs.values())}")

        # Layer order, key before value
        pairs.sort(key=lambda pair: (pair[0].layer, pair[0].name.endswith(".value")))
        return cls(token, position, mask, logits, CacheRotationMap(pairs))

    @classmethod
    def from_indices(cls,
                     num_inputs: int,
                     num_outputs: int,
                     token: int,
                     position: int,
                     mask: int,
                     logits: int,
                     cache_pairs: List[Tuple[int, int]]) -> "SlotRegistry":
        """
        Build the registry from explicit buffer indexes, for runtimes whose buffer order is opaque.
        :param cache_pairs: (input index, output index) for each cache tensor, in layer order
        """
        for index, limit, what in ((token, num_inputs, "token"),
                                   (position, num_inputs, "position"),
                                   (mask, num_inputs, "mask"),
                                   (logits, num_outputs, "logits")):
            if not 0 <= index < limit:
                raise InvalidSlotException(f"The {what} slot index {index} is out of range")
        pairs = []
        for layer, (in_index, out_index) in enumerate(cache_pairs):
            if not 0 <= in_index < num_inputs or not 0 <= out_index < num_outputs:
                raise InvalidSlotException(f"Cache pair ({in_index}, {out_index}) is out of range")
            if in_index in (token, position, mask):
                raise InvalidSlotException(f"Cache pair ({in_index}, {out_index}) overwrites a control slot")
            pairs.append((TensorSlot(in_index, SlotRole.CACHE_IN, layer=layer // 2),
                          TensorSlot(out_index, SlotRole.CACHE_OUT, layer=layer // 2)))
        return cls(TensorSlot(token, SlotRole.TOKEN),
                   TensorSlot(position, SlotRole.POSITION),
                   TensorSlot(mask, SlotRole.MASK),
                   TensorSlot(logits, SlotRole.LOGITS),
                   CacheRotationMap(pairs))

    @staticmethod
    def _find(names: List[str], wanted: str, role: SlotRole) -> TensorSlot:
        try:
            return TensorSlot(names.index(wanted), role, wanted)
        except ValueError:
            raise InvalidSlotException(f"Model runtime has no '{wanted}' buffer")
