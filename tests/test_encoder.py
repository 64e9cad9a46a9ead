"""
Unit tests for the encoder: forward/backward through time, masking, buffer reuse, serialization.
"""
import copy
import io

import pytest
import torch

from seqenc import Batch, ConfigurationError, Encoder, EncoderConfig, LengthMask, SequencingError, ShapeMismatchError
from seqenc.cells.dropout import VariationalDropout
from seqenc.inputs import FeatureProjection, WordEmbedding

VOCAB = 12


def _encoder(cell_type="LSTM", layers=1, hidden_size=4, embedding_size=3, seed=0, **options):
    torch.manual_seed(seed)
    options.setdefault("dropout", 0.0)
    config = EncoderConfig(cell_type=cell_type, layers=layers, hidden_size=hidden_size, **options)
    return Encoder(config, WordEmbedding(VOCAB, embedding_size))


def _scenario_batch():
    """Two sequences, source_length 3, source_size [3, 1]."""
    return Batch.from_sequences([[1, 2, 3], [4]])


def _reference_bptt(network, batch, grad_states, grad_context):
    """Gradients of sum(context * grad_context) + sum(final * grad_states) by autograd over the full unroll."""
    cell = network.cell
    mask = LengthMask(batch)
    states = tuple(torch.zeros(batch.size, cell.hidden_size) for _ in range(cell.num_states))
    features, tops = [], []
    for t in range(batch.source_length):
        f = network.input_network(batch.get_source_input(t))
        f.retain_grad()
        features.append(f)
        states = mask.apply(cell(*states, f), t)
        tops.append(states[-1])
    context = torch.stack(tops, dim=1)
    loss = (context * grad_context).sum()
    if grad_states is not None:
        loss = loss + sum((s * g).sum() for s, g in zip(states, grad_states))
    loss.backward()
    return [f.grad for f in features]


class TestForward:
    """Shapes, determinism and state threading."""

    @pytest.mark.parametrize("cell_type,layers,num_states", [("LSTM", 1, 2), ("LSTM", 3, 6), ("GRU", 2, 2)])
    def test_shapes(self, cell_type, layers, num_states):
        """Context is [size, source_length, hidden]; final state has num_states [size, hidden] tensors."""
        enc = _encoder(cell_type=cell_type, layers=layers, hidden_size=5).eval()
        batch = Batch(torch.randint(1, VOCAB, (3, 7)))
        states, context = enc(batch)
        assert enc.num_states == num_states
        assert context.shape == (3, 7, 5)
        assert len(states) == num_states
        assert all(s.shape == (3, 5) for s in states)

    def test_context_holds_top_layer_output(self):
        """The last step of the context equals the last state component."""
        enc = _encoder(layers=2).eval()
        states, context = enc(Batch(torch.randint(1, VOCAB, (2, 4))))
        assert torch.equal(context[:, -1], states[-1])

    def test_deterministic(self):
        """Repeated eval forwards give bit-identical results."""
        enc = _encoder(layers=2)
        enc.eval()
        batch = Batch(torch.randint(1, VOCAB, (4, 6)))
        states1, context1 = enc(batch)
        states1 = tuple(s.clone() for s in states1)
        context1 = context1.clone()
        states2, context2 = enc(batch)
        assert torch.equal(context1, context2)
        assert all(torch.equal(a, b) for a, b in zip(states1, states2))

    def test_training_and_eval_agree_without_dropout(self):
        """With dropout disabled, training-mode forward computes the same values."""
        enc = _encoder(layers=2)
        batch = _scenario_batch()
        enc.eval()
        _, context_eval = enc(batch)
        context_eval = context_eval.clone()
        enc.train()
        _, context_train = enc(batch)
        assert torch.allclose(context_eval, context_train)

    def test_initial_states_are_used(self):
        """A non-zero initial state changes the output."""
        enc = _encoder().eval()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context_zero = enc(batch)
        context_zero = context_zero.clone()
        init = tuple(torch.ones(2, 4) for _ in range(enc.num_states))
        _, context_init = enc(batch, init)
        assert not torch.allclose(context_zero, context_init)

    def test_explicit_zero_state_matches_default(self):
        enc = _encoder().eval()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context_default = enc(batch)
        context_default = context_default.clone()
        _, context_zero = enc(batch, tuple(torch.zeros(2, 4) for _ in range(enc.num_states)))
        assert torch.equal(context_default, context_zero)

    def test_does_not_mutate_batch(self):
        enc = _encoder().train()
        batch = _scenario_batch()
        src = batch.src.clone()
        sizes = batch.source_size.clone()
        _, context = enc(batch)
        enc.backward(batch, None, torch.ones_like(context))
        assert torch.equal(batch.src, src)
        assert torch.equal(batch.source_size, sizes)

    def test_float_features(self):
        """Continuous inputs go through a projection input network."""
        torch.manual_seed(0)
        enc = Encoder(EncoderConfig(cell_type="GRU", layers=1, hidden_size=6, dropout=0.0), FeatureProjection(5, 3))
        batch = Batch(torch.randn(2, 4, 5))
        states, context = enc.eval()(batch)
        assert context.shape == (2, 4, 6)
        assert len(states) == 1


class TestMasking:
    """Left-padded samples keep zero state and zero gradient on padded steps."""

    def test_padded_steps_are_zero(self):
        """Scenario: source_size [3, 1] -> sample 2 is zero at steps 1 and 2, non-zero at step 3."""
        enc = _encoder(hidden_size=4).eval()
        states, context = enc(_scenario_batch())
        assert enc.num_states == 2
        assert torch.count_nonzero(context[1, 0]) == 0
        assert torch.count_nonzero(context[1, 1]) == 0
        assert torch.count_nonzero(context[1, 2]) > 0
        assert all(torch.count_nonzero(c) > 0 for c in context[0])

    def test_padding_does_not_leak(self):
        """A padded sample ends in the same state as the unpadded sequence encoded alone."""
        enc = _encoder(layers=2).eval()
        states, context = enc(_scenario_batch())
        padded_final = tuple(s[1].clone() for s in states)
        padded_out = context[1, 2].clone()
        alone_states, alone_context = enc(Batch(torch.tensor([[4]])))
        assert torch.allclose(alone_context[0, 0], padded_out)
        assert all(torch.allclose(a[0], b) for a, b in zip(alone_states, padded_final))

    def test_padded_steps_get_zero_gradient(self):
        """Backward with all-ones context gradient: sample 2 has zero gradient at steps 1 and 2."""
        enc = _encoder(hidden_size=4).train()
        batch = _scenario_batch()
        _, context = enc(batch)
        grads = enc.backward(batch, None, torch.ones_like(context))
        assert len(grads) == 3
        assert torch.count_nonzero(grads[0][1]) == 0
        assert torch.count_nonzero(grads[1][1]) == 0
        assert torch.count_nonzero(grads[2][1]) > 0
        assert all(torch.count_nonzero(g[0]) > 0 for g in grads)

    def test_padded_gradient_zero_even_with_final_state_gradient(self):
        enc = _encoder(layers=2).train()
        batch = _scenario_batch()
        states, context = enc(batch)
        grad_states = tuple(torch.ones_like(s) for s in states)
        grads = enc.backward(batch, grad_states, torch.zeros_like(context))
        assert torch.count_nonzero(grads[0][1]) == 0
        assert torch.count_nonzero(grads[1][1]) == 0


class TestBackward:
    """Manual BPTT against autograd, and sequencing/shape contracts."""

    def test_single_step_gradient_is_cell_reverse_mode(self):
        """source_length 1, no final-state gradient: result is the cell's gradient driven by grad_context[:, 0]."""
        enc = _encoder(layers=2).train()
        batch = Batch(torch.tensor([[3], [5]]))
        _, context = enc(batch)
        grad_context = torch.randn_like(context)
        grads = enc.backward(batch, None, grad_context)

        cell = enc.network.cell
        feature = enc.network.input_network(batch.get_source_input(0)).detach().requires_grad_()
        zeros = tuple(torch.zeros(2, 4) for _ in range(cell.num_states))
        outputs = cell(*zeros, feature)
        (expected,) = torch.autograd.grad(outputs[-1], feature, grad_context[:, 0])
        assert len(grads) == 1
        assert torch.allclose(grads[0], expected, atol=1e-6)

    @pytest.mark.parametrize("cell_type", ["LSTM", "GRU"])
    @pytest.mark.parametrize("with_final_grad", [False, True])
    def test_matches_autograd_through_unrolled_graph(self, cell_type, with_final_grad):
        """Per-step input gradients and parameter gradients equal those of autograd on the full unroll."""
        enc = _encoder(cell_type=cell_type, layers=2, hidden_size=5, residual=True).train()
        reference = copy.deepcopy(enc.network)
        batch = Batch.from_sequences([[1, 2, 3, 4], [5, 6], [7, 8, 9]])

        states, context = enc(batch)
        torch.manual_seed(1)
        grad_context = torch.randn_like(context)
        grad_states = tuple(torch.randn_like(s) for s in states) if with_final_grad else None
        grads = enc.backward(batch, grad_states, grad_context)

        expected = _reference_bptt(reference, batch, grad_states, grad_context)
        for got, want in zip(grads, expected):
            assert torch.allclose(got, want, atol=1e-5)
        for (name, p), (_, q) in zip(enc.network.named_parameters(), reference.named_parameters()):
            assert p.grad is not None, name
            assert torch.allclose(p.grad, q.grad, atol=1e-5), name

    def test_parameter_gradients_accumulate(self):
        """Two forward/backward pairs without zero_grad double the parameter gradients."""
        enc = _encoder().train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context = enc(batch)
        enc.backward(batch, None, torch.ones_like(context))
        first = [p.grad.clone() for p in enc.parameters()]
        _, context = enc(batch)
        enc.backward(batch, None, torch.ones_like(context))
        for g, p in zip(first, enc.parameters()):
            assert torch.allclose(p.grad, 2 * g, atol=1e-6)

    def test_backward_without_forward(self):
        enc = _encoder().train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        with pytest.raises(SequencingError):
            enc.backward(batch, None, torch.ones(2, 3, 4))

    def test_backward_twice(self):
        enc = _encoder().train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context = enc(batch)
        grad = torch.ones_like(context)
        enc.backward(batch, None, grad)
        with pytest.raises(SequencingError):
            enc.backward(batch, None, grad)

    def test_backward_in_eval_mode(self):
        enc = _encoder().eval()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context = enc(batch)
        with pytest.raises(SequencingError):
            enc.backward(batch, None, torch.ones_like(context))

    def test_backward_with_other_batch_shape(self):
        enc = _encoder().train()
        enc(Batch(torch.randint(1, VOCAB, (2, 3))))
        other = Batch(torch.randint(1, VOCAB, (2, 4)))
        with pytest.raises(ShapeMismatchError):
            enc.backward(other, None, torch.ones(2, 4, 4))

    def test_grad_context_shape_checked(self):
        enc = _encoder().train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        enc(batch)
        with pytest.raises(ShapeMismatchError):
            enc.backward(batch, None, torch.ones(2, 3, 5))

    def test_grad_states_shape_checked(self):
        enc = _encoder().train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context = enc(batch)
        with pytest.raises(ShapeMismatchError):
            enc.backward(batch, (torch.ones(2, 4),), torch.ones_like(context))

    def test_initial_states_checked(self):
        enc = _encoder().eval()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        with pytest.raises(ShapeMismatchError):
            enc(batch, (torch.zeros(2, 4),))
        with pytest.raises(ShapeMismatchError):
            enc(batch, (torch.zeros(3, 4), torch.zeros(3, 4)))

    def test_feature_size_checked(self):
        """An input network whose output does not match the cell input size is rejected."""
        enc = _encoder(embedding_size=3).eval()
        enc.network.input_network = WordEmbedding(VOCAB, 7)
        with pytest.raises(ShapeMismatchError):
            enc(Batch(torch.randint(1, VOCAB, (2, 3))))

    def test_projection_width_checked(self):
        """Float features wider than the projection expects raise ShapeMismatchError, not a torch error."""
        enc = Encoder(EncoderConfig(cell_type="GRU", layers=1, hidden_size=4, dropout=0.0), FeatureProjection(5, 3))
        with pytest.raises(ShapeMismatchError):
            enc.train()(Batch(torch.randn(2, 3, 6)))
        with pytest.raises(SequencingError):
            enc.backward(Batch(torch.randn(2, 3, 6)), None, torch.ones(2, 3, 4))

    def test_failed_forward_leaves_nothing_to_backpropagate(self):
        """A training forward that raises mid-sequence drops the retained steps of earlier calls too."""
        enc = _encoder(embedding_size=3).train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        _, context = enc(batch)
        grad = torch.ones_like(context)
        good_input = enc.network.input_network
        enc.network.input_network = WordEmbedding(VOCAB, 7)
        with pytest.raises(ShapeMismatchError):
            enc(batch)
        enc.network.input_network = good_input
        with pytest.raises(SequencingError):
            enc.backward(batch, None, grad)

    def test_forward_after_failed_forward(self):
        """The encoder recovers: the next successful forward can be backpropagated."""
        enc = _encoder(embedding_size=3).train()
        batch = Batch(torch.randint(1, VOCAB, (2, 3)))
        good_input = enc.network.input_network
        enc.network.input_network = WordEmbedding(VOCAB, 7)
        with pytest.raises(ShapeMismatchError):
            enc(batch)
        enc.network.input_network = good_input
        _, context = enc(batch)
        grads = enc.backward(batch, None, torch.ones_like(context))
        assert len(grads) == 3


class TestBufferReuse:
    """Pool-backed outputs are reused across calls without leaking values."""

    def test_context_buffer_reused(self):
        enc = _encoder().eval()
        _, context1 = enc(Batch(torch.randint(1, VOCAB, (2, 3))))
        _, context2 = enc(Batch(torch.randint(1, VOCAB, (2, 3))))
        assert context1 is context2

    def test_context_reallocated_on_shape_change(self):
        enc = _encoder().eval()
        _, context1 = enc(Batch(torch.randint(1, VOCAB, (2, 3))))
        _, context2 = enc(Batch(torch.randint(1, VOCAB, (4, 3))))
        assert context2.shape == (4, 3, 4)
        assert context1 is not context2

    def test_no_state_leakage_across_calls(self):
        """The second call's output does not depend on the first call's input."""
        enc = _encoder(layers=2).train()
        fresh = copy.deepcopy(enc)
        first = Batch.from_sequences([[1, 2, 3], [4, 5, 6]])
        second = Batch.from_sequences([[7, 8, 9], [10]])

        _, context = enc(first)
        enc.backward(first, None, torch.ones_like(context))
        states, context = enc(second)
        fresh_states, fresh_context = fresh(second)
        assert torch.equal(context, fresh_context)
        assert all(torch.equal(a, b) for a, b in zip(states, fresh_states))


class TestForwardOneStep:
    def test_matches_one_step_forward(self):
        enc = _encoder(layers=2).eval()
        x = torch.tensor([3, 4])
        states, output = enc.forward_one_step(x, clone=True)
        full_states, context = enc(Batch(x.unsqueeze(1)))
        assert torch.equal(output, context[:, 0])
        assert all(torch.equal(a, b) for a, b in zip(states, full_states))

    def test_uncloned_output_is_overwritten(self):
        """Without clone the output aliases the pool and changes on the next call."""
        enc = _encoder().eval()
        _, out1 = enc.forward_one_step(torch.tensor([3, 4]))
        snapshot = out1.clone()
        enc.forward_one_step(torch.tensor([5, 6]))
        assert not torch.equal(out1, snapshot)

    def test_cloned_output_survives(self):
        enc = _encoder().eval()
        states1, out1 = enc.forward_one_step(torch.tensor([3, 4]), clone=True)
        snapshot = out1.clone()
        enc.forward_one_step(torch.tensor([5, 6]))
        assert torch.equal(out1, snapshot)

    def test_threads_state_step_by_step(self):
        """Feeding steps one at a time reproduces the full-sequence encoding."""
        enc = _encoder(cell_type="GRU", layers=2).eval()
        src = torch.randint(1, VOCAB, (2, 5))
        _, context = enc(Batch(src))
        expected = context.clone()
        states = None
        for t in range(5):
            states, out = enc.forward_one_step(src[:, t], states, clone=True)
            assert torch.allclose(out, expected[:, t], atol=1e-6)


class TestSerialization:
    def test_round_trip(self):
        """serialize -> save -> load -> identical output."""
        enc = _encoder(cell_type="GRU", layers=2, dropout=0.3, dropout_type="variational").eval()
        batch = _scenario_batch()
        _, context = enc(batch)
        expected = context.clone()

        buf = io.BytesIO()
        enc.save(buf)
        buf.seek(0)
        loaded = Encoder.load_file(buf).eval()
        assert loaded.args == enc.args
        assert "context" not in loaded.pool
        _, context2 = loaded(batch)
        assert torch.equal(expected, context2)

    def test_serialized_layout(self):
        enc = _encoder(layers=2)
        data = enc.serialize()
        assert data["args"] == {"hidden_size": 4, "num_states": 4, "dropout_type": "naive"}
        assert data["modules"][0] is enc.network

    def test_legacy_num_effective_layers(self):
        enc = _encoder(layers=2)
        data = enc.serialize()
        data["args"]["num_effective_layers"] = data["args"].pop("num_states")
        loaded = Encoder.load(data)
        assert loaded.num_states == 4
        assert "num_effective_layers" not in loaded.args

    def test_mismatched_args_rejected(self):
        data = _encoder(layers=2).serialize()
        data["args"]["num_states"] = 3
        with pytest.raises(ConfigurationError):
            Encoder.load(data)


class TestDropout:
    def test_variational_noise_resampled_once_per_forward(self):
        """The shared mask is drawn at the first step and kept for the rest of the call."""
        enc = _encoder(layers=2, dropout=0.5, dropout_type="variational").train()
        drop = enc.network.cell.dropouts[0]
        assert isinstance(drop, VariationalDropout)
        batch = Batch(torch.randint(1, VOCAB, (3, 4)))

        seen = []
        drop.register_forward_hook(lambda m, inp, out: seen.append(m.noise))
        enc(batch)
        assert len(seen) == 4
        assert all(n is seen[0] for n in seen)

        enc(batch)
        assert seen[4] is not seen[0]

    def test_variational_dropout_off_in_eval(self):
        drop = VariationalDropout(0.5).eval()
        x = torch.randn(3, 4)
        assert torch.equal(drop(x), x)

    def test_word_dropout_all(self):
        """dropout_words=1 turns every token into padding, so the encoder only sees zero embeddings."""
        enc = _encoder(dropout_words=1.0).train()
        ref = _encoder(dropout_words=1.0).eval()
        _, context = enc(Batch(torch.randint(1, VOCAB, (2, 3))))
        _, pad_context = ref(Batch(torch.zeros(2, 3, dtype=torch.long)))
        assert torch.allclose(context, pad_context)

    def test_word_dropout_consistent_within_forward(self):
        """A dropped word type is dropped at every step of the call."""
        from seqenc.cells.dropout import WordDropout

        drop = WordDropout(0.5, pad_index=0).train()
        ids = torch.arange(1, 50)
        first = drop(ids)
        second = drop(ids)
        assert torch.equal(first, second)
        drop.reset_noise()
        assert drop.noise is None


class TestConstruction:
    def test_from_options(self):
        enc = Encoder.from_options(WordEmbedding(VOCAB, 3), layers=3, hidden_size=6, cell_type="GRU")
        assert enc.num_states == 3
        assert enc.hidden_size == 6

    def test_from_options_validates(self):
        with pytest.raises(ConfigurationError):
            Encoder.from_options(WordEmbedding(VOCAB, 3), dropout=2.0)

    def test_word_dropout_lives_on_step_network(self):
        enc = Encoder.from_options(WordEmbedding(VOCAB, 3, pad_index=1), hidden_size=4, dropout_words=0.2)
        assert enc.network.word_dropout.p == 0.2
        assert enc.network.word_dropout.pad_index == 1
