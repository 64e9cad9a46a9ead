from seqenc.inputs.base import InputNetwork
from seqenc.inputs.embedding import WordEmbedding
from seqenc.inputs.projection import FeatureProjection

__all__ = ["InputNetwork", "WordEmbedding", "FeatureProjection"]
