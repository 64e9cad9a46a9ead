"""
Unidirectional recurrent encoder with hand-written backpropagation through time.

    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
     .      .      .             .
     |      |      |             |
    h_1 => h_2 => h_3 => ... => h_n
     |      |      |             |
    x_1    x_2    x_3           x_n

forward() threads the state through one application of the step network per time step
and writes the top-layer output of every step into a context tensor. backward() walks
the steps in reverse, adds the context gradient of each step to the carried top-layer
state gradient and runs reverse mode through the recorded step.

Context, initial state and state gradients live in a BufferPool owned by the encoder:
returned tensors are only valid until the next call. Clone what you need to keep.
"""
import logging

import torch
from torch import nn

from seqenc.batch import StepBatch
from seqenc.buffers import BufferPool
from seqenc.cells.dropout import WordDropout, reset_noise
from seqenc.config import EncoderConfig
from seqenc.errors import ConfigurationError, SequencingError, ShapeMismatchError
from seqenc.masking import LengthMask
from seqenc.registry import get_cell

logger = logging.getLogger(__name__)


class StepNetwork(nn.Module):
    """One time step: (state_1, ..., state_S, raw_input) -> (state_1', ..., state_S')."""

    def __init__(self, input_network: nn.Module, cell: nn.Module, word_dropout: float = 0.0, pad_index: int = 0):
        super().__init__()
        self.input_network = input_network
        self.cell = cell
        self.word_dropout = WordDropout(word_dropout, pad_index) if word_dropout > 0 else None

    def features(self, raw) -> tuple[torch.Tensor, ...]:
        """Input network output for one step, always as a tuple."""
        if self.word_dropout is not None:
            if isinstance(raw, (tuple, list)):
                raw = (self.word_dropout(raw[0]), *raw[1:])
            else:
                raw = self.word_dropout(raw)
        out = self.input_network(*raw) if isinstance(raw, (tuple, list)) else self.input_network(raw)
        return tuple(out) if isinstance(out, (tuple, list)) else (out,)

    def forward(self, *inputs):
        states, raw = inputs[:-1], inputs[-1]
        return tuple(self.cell(*states, *self.features(raw)))


class _Step:
    """What backward() needs from one training-mode time step."""

    __slots__ = ("state_leaves", "features", "feature_leaves", "outputs")

    def __init__(self, state_leaves, features, feature_leaves, outputs):
        self.state_leaves = state_leaves
        self.features = features
        self.feature_leaves = feature_leaves
        self.outputs = outputs


def build_cell(config: EncoderConfig, input_size: int) -> nn.Module:
    info = get_cell(config.cell_type)
    if info is None:
        raise ConfigurationError(f"Unknown cell_type {config.cell_type!r}")
    return info["cls"](
        config.layers,
        input_size,
        config.hidden_size,
        dropout=config.dropout,
        residual=config.residual,
        dropout_input=config.dropout_input,
        dropout_type=config.dropout_type,
    )


class Encoder(nn.Module):
    def __init__(self, config: EncoderConfig, input_network: nn.Module):
        """
        config: validated EncoderConfig
        input_network: maps one step of raw input to [batch, input_network.input_size]
        """
        super().__init__()
        cell = build_cell(config, input_network.input_size)
        network = StepNetwork(
            input_network,
            cell,
            word_dropout=config.dropout_words,
            pad_index=getattr(input_network, "pad_index", 0),
        )
        self._setup(network, {
            "hidden_size": cell.hidden_size,
            "num_states": cell.num_states,
            "dropout_type": config.dropout_type,
        })

    @classmethod
    def from_options(cls, input_network: nn.Module, **options) -> "Encoder":
        return cls(EncoderConfig.from_dict(options), input_network)

    def _setup(self, network: StepNetwork, args: dict):
        self.network = network
        self.args = args
        self.reset_preallocation()

    def reset_preallocation(self):
        """Forget every pooled buffer and any retained step inputs."""
        self.pool = BufferPool()
        self._steps = None
        self._batch_shape = None

    @property
    def hidden_size(self) -> int:
        return self.args["hidden_size"]

    @property
    def num_states(self) -> int:
        return self.args["num_states"]

    def _dtype_device(self):
        p = next(self.network.parameters(), None)
        if p is None:
            return torch.get_default_dtype(), torch.device("cpu")
        return p.dtype, p.device

    def _check_states(self, states, batch_size: int, name: str) -> tuple[torch.Tensor, ...]:
        if torch.is_tensor(states):
            states = (states,)
        states = tuple(states)
        if len(states) != self.num_states:
            raise ShapeMismatchError(f"{name} has {len(states)} components, expected {self.num_states}")
        expected = (batch_size, self.hidden_size)
        for i, s in enumerate(states):
            if tuple(s.shape) != expected:
                raise ShapeMismatchError(f"{name}[{i}] has shape {tuple(s.shape)}, expected {expected}")
        return states

    def forward(self, batch, initial_states=None):
        """Compute the context representation of a batch.

        batch: see seqenc.batch.Batch
        initial_states: optional tuple of num_states tensors [batch.size, hidden_size];
            zeros when omitted

        Returns:
            final states: tuple of num_states tensors [batch.size, hidden_size]
            context: [batch.size, batch.source_length, hidden_size], top-layer output per step
        """
        dtype, device = self._dtype_device()
        shape = (batch.size, self.hidden_size)

        if initial_states is None:
            states = self.pool.acquire_state_buffer(
                "init_state", self.num_states, shape, dtype=dtype, device=device, zero=True
            )
        else:
            states = self._check_states(initial_states, batch.size, "initial_states")

        context = self.pool.acquire_tensor(
            "context", (batch.size, batch.source_length, self.hidden_size), dtype=dtype, device=device
        )
        mask = LengthMask(batch)

        steps = None
        if self.training:
            # A failed call leaves nothing for backward().
            self._steps = None
            self._batch_shape = None
            steps = []
            # Variational and word dropout noise is drawn once per sequence.
            reset_noise(self.network)

        with torch.set_grad_enabled(self.training):
            for t in range(batch.source_length):
                raw = batch.get_source_input(t)
                if self.training:
                    states = self._train_step(steps, states, raw)
                else:
                    states = self.network(*states, raw)

                # Padded steps must not leak state into the real ones that follow.
                states = mask.apply(states, t)

                context[:, t].copy_(states[-1])

        if steps is not None:
            self._steps = steps
            self._batch_shape = (batch.size, batch.source_length)

        return states, context

    def _train_step(self, steps, states, raw):
        state_leaves = tuple(s.detach().requires_grad_() for s in states)
        features = self.network.features(raw)
        feature_leaves = tuple(
            f.detach().requires_grad_() if f.is_floating_point() else f for f in features
        )
        outputs = self.network.cell(*state_leaves, *feature_leaves)
        if torch.is_tensor(outputs):
            outputs = (outputs,)
        outputs = tuple(outputs)
        steps.append(_Step(state_leaves, features, feature_leaves, outputs))
        return tuple(o.detach() for o in outputs)

    def forward_one_step(self, inputs, initial_states=None, clone: bool = False):
        """One step forward, e.g. for step-by-step encoding.

        inputs: raw input of one step (tensor or tuple of tensors, batch on dim 0)
        initial_states: previous states, zeros when omitted
        clone: return copies instead of pool-backed tensors

        Returns:
            states: tuple of num_states tensors
            output: [batch, hidden_size] top-layer output
        """
        states, context = self.forward(StepBatch(inputs), initial_states)
        output = context[:, 0]
        if clone:
            return tuple(s.clone() for s in states), output.clone()
        return states, output

    def backward(self, batch, grad_states_output, grad_context_output):
        """Backward pass through time (training mode only).

        batch: the batch of the preceding forward()
        grad_states_output: gradient w.r.t. the final states, or None if they were unused
        grad_context_output: gradient w.r.t. the full context [size, source_length, hidden_size]

        Returns a list with one entry per time step: the gradient w.r.t. the input network
        output at that step (a tuple if the input network returns several tensors).
        Parameter gradients of the cell and the input network are accumulated in .grad.
        """
        if not self.training:
            raise SequencingError("backward() is only available in training mode")
        if self._steps is None:
            raise SequencingError("backward() needs a training-mode forward() that has not been backpropagated yet")
        if (batch.size, batch.source_length) != self._batch_shape:
            raise ShapeMismatchError(
                f"backward() batch is {batch.size}x{batch.source_length}, "
                f"forward() saw {self._batch_shape[0]}x{self._batch_shape[1]}"
            )
        expected = (batch.size, batch.source_length, self.hidden_size)
        if tuple(grad_context_output.shape) != expected:
            raise ShapeMismatchError(
                f"grad_context_output has shape {tuple(grad_context_output.shape)}, expected {expected}"
            )

        dtype, device = self._dtype_device()
        grad_states = self.pool.acquire_state_buffer(
            "grad_state",
            self.num_states,
            (batch.size, self.hidden_size),
            dtype=dtype,
            device=device,
            zero=grad_states_output is None,
        )
        if grad_states_output is not None:
            for g, src in zip(grad_states, self._check_states(grad_states_output, batch.size, "grad_states_output")):
                g.copy_(src)

        steps, self._steps = self._steps, None
        mask = LengthMask(batch)
        grad_inputs = [None] * batch.source_length

        for t in range(batch.source_length - 1, -1, -1):
            step = steps[t]

            # Top-layer output feeds both the next step and the context.
            grad_states[-1].add_(grad_context_output[:, t])

            mask.apply_(grad_states, t)

            pairs = [(o, g) for o, g in zip(step.outputs, grad_states) if o.requires_grad]
            if pairs:
                torch.autograd.backward([o for o, _ in pairs], grad_tensors=[g for _, g in pairs])

            # Gradient w.r.t. the step's input states becomes the gradient of step t - 1.
            for g, leaf in zip(grad_states, step.state_leaves):
                if leaf.grad is None:
                    g.zero_()
                else:
                    g.copy_(leaf.grad)

            feature_grads = tuple(
                (leaf.grad if leaf.grad is not None else torch.zeros_like(leaf)) if leaf.is_floating_point() else None
                for leaf in step.feature_leaves
            )
            upstream = [
                (f, g) for f, g in zip(step.features, feature_grads)
                if g is not None and f.requires_grad
            ]
            if upstream:
                torch.autograd.backward([f for f, _ in upstream], grad_tensors=[g for _, g in upstream])

            grad_inputs[t] = feature_grads[0] if len(feature_grads) == 1 else feature_grads

        logger.debug("Released %d retained steps", len(steps))
        return grad_inputs

    def serialize(self) -> dict:
        """Data to save: construction args and the step network."""
        return {
            "name": "Encoder",
            "modules": [self.network],
            "args": dict(self.args),
        }

    @classmethod
    def load(cls, pretrained: dict) -> "Encoder":
        """Rebuild an Encoder from serialize() output. The buffer pool starts empty."""
        args = dict(pretrained["args"])
        if args.get("num_states") is None:
            # Older checkpoints call it num_effective_layers.
            args["num_states"] = args.pop("num_effective_layers", None)
        args.pop("num_effective_layers", None)
        for key in ("hidden_size", "num_states"):
            if args.get(key) is None:
                raise ConfigurationError(f"Serialized encoder is missing {key!r}")
        args.setdefault("dropout_type", "naive")

        network = pretrained["modules"][0]
        cell = network.cell
        if cell.num_states != args["num_states"] or cell.hidden_size != args["hidden_size"]:
            raise ConfigurationError(
                f"Serialized args (num_states={args['num_states']}, hidden_size={args['hidden_size']}) "
                f"do not match the stored cell ({cell.num_states}, {cell.hidden_size})"
            )

        self = cls.__new__(cls)
        nn.Module.__init__(self)
        self._setup(network, args)
        logger.debug("Loaded encoder with args %s", args)
        return self

    def save(self, path):
        torch.save(self.serialize(), path)

    @classmethod
    def load_file(cls, path, map_location=None) -> "Encoder":
        return cls.load(torch.load(path, map_location=map_location, weights_only=False))
