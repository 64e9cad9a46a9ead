import time

import torch


class BenchManager:
    """Times forward + backward of an encoder on batches drawn from a generator."""

    def __init__(self, encoder, generator, device):
        self.encoder = encoder
        self.generator = generator
        self.device = device
        self.history = []

    def _sync(self):
        if self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def bench_step(self, batch_size: int):
        self.encoder.train()
        batch = self.generator.sample(batch_size).to(self.device)

        self._sync()
        start = time.perf_counter()
        states, context = self.encoder(batch)
        self._sync()
        forward_s = time.perf_counter() - start

        grad_context = torch.ones_like(context)
        start = time.perf_counter()
        self.encoder.backward(batch, None, grad_context)
        self._sync()
        backward_s = time.perf_counter() - start

        n_tokens = int(batch.source_size.sum()) if batch.variable_lengths() else batch.size * batch.source_length
        return forward_s, backward_s, n_tokens

    def eval_step(self, batch_size: int):
        self.encoder.eval()
        batch = self.generator.sample(batch_size).to(self.device)
        self._sync()
        start = time.perf_counter()
        self.encoder(batch)
        self._sync()
        return time.perf_counter() - start

    def run(self, n_steps: int, batch_size: int = 64, report_every: int = 10):
        self.history = []
        fwd_total = bwd_total = 0.0
        tokens_total = 0
        for step in range(n_steps):
            forward_s, backward_s, n_tokens = self.bench_step(batch_size)
            fwd_total += forward_s
            bwd_total += backward_s
            tokens_total += n_tokens

            if (step + 1) % report_every == 0:
                eval_s = self.eval_step(batch_size)
                n = step + 1
                entry = {
                    'step': n,
                    'forward_ms': 1000.0 * fwd_total / n,
                    'backward_ms': 1000.0 * bwd_total / n,
                    'eval_ms': 1000.0 * eval_s,
                    'tokens_per_sec': tokens_total / max(fwd_total + bwd_total, 1e-12),
                }
                self.history.append(entry)
                print(
                    f"Step {n}: forward={entry['forward_ms']:.2f}ms, backward={entry['backward_ms']:.2f}ms, "
                    f"eval={entry['eval_ms']:.2f}ms, tokens/s={entry['tokens_per_sec']:.0f}"
                )
        return self.history
