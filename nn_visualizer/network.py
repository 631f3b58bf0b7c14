"""
network.py
~~~~~~~~~~

Inference for small fully-connected feed-forward networks.

A network is described by a ``NetworkDescriptor``: the layer sizes plus one
flat sequence of weights and one flat sequence of biases. Weights are laid
out row-major, layer by layer: all weights feeding neuron 0 of layer 1,
then neuron 1 of layer 1, and so on into layer 2. Biases follow the same
layer/neuron order, one per non-input neuron.

Every non-input layer (the output layer included) applies a leaky ReLU, so
the returned scores are post-activation values rather than raw logits.
"""

import logging
from typing import NamedTuple, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

# Slope of the negative branch the shipped models were trained with
LEAKY_SLOPE = 0.01

ArrayLike = Union[Sequence[float], np.ndarray]


class MalformedDescriptorError(ValueError):
    """Raised when structure, weights and biases do not agree in size."""


class InputShapeError(ValueError):
    """Raised when an input vector does not match the input layer width."""


class LayerSlice(NamedTuple):
    """Location of one layer's parameters inside the flat sequences."""
    index: int
    inputs: int
    outputs: int
    weight_offset: int
    bias_offset: int

    @property
    def weight_count(self) -> int:
        return self.inputs * self.outputs


def _layer_slices(structure: Tuple[int, ...]) -> Tuple[LayerSlice, ...]:
    slices = []
    weight_offset = 0
    bias_offset = 0
    for index in range(1, len(structure)):
        inputs, outputs = structure[index - 1], structure[index]
        slices.append(LayerSlice(index, inputs, outputs,
                                 weight_offset, bias_offset))
        weight_offset += inputs * outputs
        bias_offset += outputs
    return tuple(slices)


def _frozen(values: ArrayLike, name: str) -> np.ndarray:
    try:
        array = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise MalformedDescriptorError(f"{name} must be numeric: {e}") from e
    if array.ndim != 1:
        raise MalformedDescriptorError(
            f"{name} must be a flat sequence, got shape {array.shape}"
        )
    array.setflags(write=False)
    return array


class NetworkDescriptor:
    """
    Immutable description of a trained dense network.

    Construction validates the weight and bias counts against ``structure``
    and raises ``MalformedDescriptorError`` on any mismatch, so a
    descriptor that exists is always safe to run.
    """

    __slots__ = ('_structure', '_weights', '_biases', '_layers')

    def __init__(self, structure: Sequence[int], weights: ArrayLike,
                 biases: ArrayLike):
        try:
            structure = tuple(structure)
        except TypeError as e:
            raise MalformedDescriptorError(
                f"structure must be a sequence of layer sizes: {e}"
            ) from e
        if len(structure) < 2:
            raise MalformedDescriptorError(
                f"structure needs at least 2 layers, got {list(structure)}"
            )
        for size in structure:
            if isinstance(size, bool) or not isinstance(size, (int, np.integer)) or size < 1:
                raise MalformedDescriptorError(
                    f"layer sizes must be positive integers, got {list(structure)}"
                )
        structure = tuple(int(size) for size in structure)

        layers = _layer_slices(structure)
        weights = _frozen(weights, 'weights')
        biases = _frozen(biases, 'biases')

        expected_weights = sum(layer.weight_count for layer in layers)
        expected_biases = sum(layer.outputs for layer in layers)
        if weights.size != expected_weights:
            raise MalformedDescriptorError(
                f"structure {list(structure)} needs {expected_weights} "
                f"weights, got {weights.size}"
            )
        if biases.size != expected_biases:
            raise MalformedDescriptorError(
                f"structure {list(structure)} needs {expected_biases} "
                f"biases, got {biases.size}"
            )

        object.__setattr__(self, '_structure', structure)
        object.__setattr__(self, '_weights', weights)
        object.__setattr__(self, '_biases', biases)
        object.__setattr__(self, '_layers', layers)

    def __setattr__(self, name, value):
        raise AttributeError("NetworkDescriptor is immutable")

    def __repr__(self) -> str:
        return f"NetworkDescriptor(structure={list(self._structure)})"

    @property
    def structure(self) -> Tuple[int, ...]:
        return self._structure

    @property
    def weights(self) -> np.ndarray:
        # Views of a read-only base cannot be made writable again
        return self._weights.view()

    @property
    def biases(self) -> np.ndarray:
        return self._biases.view()

    @property
    def layers(self) -> Tuple[LayerSlice, ...]:
        """Per-layer offsets into ``weights`` and ``biases``."""
        return self._layers

    @property
    def input_size(self) -> int:
        return self._structure[0]

    @property
    def output_size(self) -> int:
        return self._structure[-1]

    @property
    def layer_count(self) -> int:
        return len(self._structure)

    def layer_weights(self, layer: LayerSlice) -> np.ndarray:
        """Weight block of ``layer`` as an (outputs, inputs) matrix."""
        block = self._weights[layer.weight_offset:
                              layer.weight_offset + layer.weight_count]
        return block.reshape(layer.outputs, layer.inputs)

    def layer_biases(self, layer: LayerSlice) -> np.ndarray:
        return self._biases[layer.bias_offset:
                            layer.bias_offset + layer.outputs]

    def to_dict(self) -> dict:
        """Plain-list form, suitable for ``json.dumps``."""
        return {
            'structure': list(self._structure),
            'weights': self._weights.tolist(),
            'biases': self._biases.tolist(),
        }


def leaky_relu(x):
    """``x`` where positive, ``0.01 * x`` elsewhere (so ``f(0) == 0``)."""
    x = np.asarray(x, dtype=np.float64)
    return np.where(x > 0, x, LEAKY_SLOPE * x)


def forward(input: ArrayLike, net: NetworkDescriptor) -> np.ndarray:
    """
    Run one full forward pass and return the output layer's activations.

    Args:
        input: Vector of ``net.input_size`` normalized intensities
        net: Descriptor to evaluate

    Returns:
        Vector of ``net.output_size`` post-activation scores

    Raises:
        InputShapeError: If the input length differs from the input layer
    """
    activations = np.asarray(input, dtype=np.float64)
    if activations.ndim != 1 or activations.size != net.input_size:
        raise InputShapeError(
            f"expected input of length {net.input_size}, "
            f"got shape {activations.shape}"
        )

    for layer in net.layers:
        z = net.layer_biases(layer) + net.layer_weights(layer) @ activations
        activations = leaky_relu(z)

    return activations


def argmax(output: ArrayLike) -> int:
    """Index of the highest score; the lowest index wins a tie."""
    scores = np.asarray(output, dtype=np.float64)
    if scores.size == 0:
        raise ValueError("cannot select a prediction from an empty output")
    # np.argmax returns the first occurrence of the maximum
    return int(np.argmax(scores))


def predict(input: ArrayLike, net: NetworkDescriptor) -> Tuple[np.ndarray, int]:
    """Forward pass plus prediction: ``(output, predicted_index)``."""
    output = forward(input, net)
    return output, argmax(output)
