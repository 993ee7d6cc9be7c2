from .bit_packing import bucketize, pack_bit_planes, unpack_bit_planes
from .kmeans import KMeans
from .residual_codec import ResidualCodec
