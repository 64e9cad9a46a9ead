from seqenc.manager.bench_manager import BenchManager

__all__ = ["BenchManager"]
