from .vector_math import VectorOps
from .vector_math_gpu import VectorOpsGPU, select_vector_ops
from .maxsim import maxsim_scores, rank_top_k
