from seqenc.generators.random import RandomSequenceGenerator

__all__ = ["RandomSequenceGenerator"]
