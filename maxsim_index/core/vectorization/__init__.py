from .encoder import Encoder, encode_to_matrix
