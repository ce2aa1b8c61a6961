import pytest

from nextwordpredict.slots import SlotRegistry, SlotRole
from nextwordpredict.exceptions import InvalidSlotException

INPUT_NAMES = ["past_key_values.1.value", "input_ids", "past_key_values.0.key", "attention_mask",
               "past_key_values.1.key", "position_ids", "past_key_values.0.value"]
OUTPUT_NAMES = ["present.0.value", "present.1.key", "logits", "present.1.value", "present.0.key"]


# Control slots are found by name wherever the runtime puts them
def test_from_names_finds_control_slots():
    registry = SlotRegistry.from_names(INPUT_NAMES, OUTPUT_NAMES)
    assert registry.token.index == 1
    assert registry.token.role == SlotRole.TOKEN
    assert registry.position.index == 5
    assert registry.mask.index == 3
    assert registry.logits.index == 2
    assert registry.logits.role == SlotRole.LOGITS


# Rotation pairs each present output with its past input, layer order then key before value
def test_from_names_builds_rotation_in_layer_order():
    registry = SlotRegistry.from_names(INPUT_NAMES, OUTPUT_NAMES)
    names = [(i.name, o.name) for i, o in registry.rotation]
    assert names == [("past_key_values.0.key", "present.0.key"),
                     ("past_key_values.0.value", "present.0.value"),
                     ("past_key_values.1.key", "present.1.key"),
                     ("past_key_values.1.value", "present.1.value")]
    indexes = [(i.index, o.index) for i, o in registry.rotation]
    assert indexes == [(2, 4), (6, 0), (4, 1), (0, 3)]
    assert registry.num_layers == 2


def test_from_names_missing_token_slot():
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_names(INPUT_NAMES[2:], OUTPUT_NAMES)


def test_from_names_cache_input_without_output():
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_names(INPUT_NAMES, OUTPUT_NAMES[1:])


def test_from_names_cache_output_without_input():
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_names(INPUT_NAMES[:-1], OUTPUT_NAMES)


# Explicit index pairs, alternating key then value per layer
def test_from_indices():
    registry = SlotRegistry.from_indices(num_inputs=8, num_outputs=6, token=0, position=1, mask=2, logits=5,
                                         cache_pairs=[(3, 1), (4, 2), (5, 3), (6, 4)])
    assert [(i.index, o.index) for i, o in registry.rotation] == [(3, 1), (4, 2), (5, 3), (6, 4)]
    assert [i.layer for i, _ in registry.rotation] == [0, 0, 1, 1]
    assert registry.num_layers == 2


def test_from_indices_out_of_range():
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_indices(num_inputs=4, num_outputs=2, token=0, position=1, mask=2, logits=0,
                                  cache_pairs=[(3, 2)])
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_indices(num_inputs=4, num_outputs=2, token=0, position=1, mask=7, logits=0,
                                  cache_pairs=[])


# Two inputs may never share an output
def test_from_indices_shared_output():
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_indices(num_inputs=6, num_outputs=3, token=0, position=1, mask=2, logits=0,
                                  cache_pairs=[(3, 1), (4, 1)])


def test_from_indices_cache_over_control_slot():
    with pytest.raises(InvalidSlotException):
        SlotRegistry.from_indices(num_inputs=6, num_outputs=3, token=0, position=1, mask=2, logits=0,
                                  cache_pairs=[(2, 1)])
