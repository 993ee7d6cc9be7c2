# maxsim_index/main.py
import os
import sys
import json
import time
import logging
import argparse
import numpy as np
from pathlib import Path
from maxsim_index.config import IndexConfig, VERSION
from maxsim_index.core.indexing.collection_indexer import build_index
from maxsim_index.core.similarity_engine.index_manager import Index
from maxsim_index.core.similarity_engine.orchestrator import Searcher
from maxsim_index.core.similarity_engine.vector_math_gpu import select_vector_ops
from maxsim_index.core.utilities.config_manager import config_manager
from maxsim_index.core.utilities.errors import MaxSimIndexError
from maxsim_index.core.utilities.gpu_utils import describe_device
from maxsim_index.ui.cli.console_utils import print_header, print_table, format_elapsed_time

os.environ.setdefault('PYTORCH_ALLOC_CONF', 'expandable_segments:True')

def load_doclens(path: Path) -> np.ndarray:
    """Document lengths from a .npy array or a JSON list."""
    if path.suffix == ".json":
        with open(path, 'r') as f:
            return np.asarray(json.load(f), dtype=np.int64)
    return np.load(path).astype(np.int64)

def split_documents(embeddings: np.ndarray, doclens: np.ndarray) -> list:
    """Split a flat (E, D) embedding matrix into one array per document."""
    if int(doclens.sum()) != len(embeddings):
        raise ValueError(f"Document lengths sum to {int(doclens.sum())} but {len(embeddings)} embeddings were given")
    boundaries = np.cumsum(doclens)[:-1]
    return np.split(embeddings, boundaries)

def pick_vector_ops(args):
    force_cpu = args.cpu or config_manager.get_force_cpu()
    force_gpu = args.gpu or config_manager.get_force_gpu()
    return select_vector_ops(force_cpu=force_cpu, force_gpu=force_gpu)

def cmd_build(args):
    embeddings = np.load(args.embeddings).astype(np.float32)
    doclens = load_doclens(Path(args.doclens))
    documents = split_documents(embeddings, doclens)

    config = IndexConfig(
        dim=embeddings.shape[1],
        nbits=args.nbits,
        num_centroids=args.num_centroids,
        chunk_size=args.chunk_size,
        ncells=args.ncells or config_manager.get_ncells(),
        kmeans_niters=args.kmeans_niters,
        num_workers=args.workers or config_manager.get_num_workers()
    )
    vector_ops = pick_vector_ops(args)

    print_header(f"Building index: {args.index}")
    print(f"  📄 {len(documents):,} documents, {len(embeddings):,} embeddings, dim {config.dim}")
    print(f"  ⚙️  Centroid backend: {vector_ops.name}")
    start_time = time.time()
    path = build_index(documents, config, args.index, vector_ops=vector_ops,
                       device=getattr(vector_ops, "device_str", "cpu"))
    print(f"\n  ✅ Index written to {path} in {format_elapsed_time(time.time() - start_time)}")

def cmd_search(args):
    vector_ops = pick_vector_ops(args)
    index = Index.load(args.index, vector_ops=vector_ops)
    searcher = Searcher(index, ncells=args.ncells or config_manager.get_ncells(), vector_ops=vector_ops)
    query = np.load(args.query).astype(np.float32)
    k = args.k or config_manager.get_top_k()

    start_time = time.time()
    results = searcher.search(query, k=k, timeout=args.timeout)
    elapsed = time.time() - start_time

    print_header(f"Top {k} results ({format_elapsed_time(elapsed)})")
    if not results:
        print("  No matching documents.")
    for rank, (doc_id, score) in enumerate(results, 1):
        print(f"  {rank:>4}. doc {doc_id:<10} score {score:.4f}")

def cmd_info(args):
    index = Index.load(args.index)
    print_header(f"Index: {args.index}")
    print_table(list(index.stats().items()))

def build_parser():
    parser = argparse.ArgumentParser(prog="maxsim-index", description="Late-interaction (MaxSim) retrieval index")
    parser.add_argument('--version', action='version', version=f"%(prog)s {VERSION}")
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    device = parser.add_mutually_exclusive_group()
    device.add_argument('--cpu', action='store_true', help='Force the NumPy centroid backend')
    device.add_argument('--gpu', action='store_true', help='Force the torch centroid backend')
    subparsers = parser.add_subparsers(dest='command', required=True)

    build = subparsers.add_parser('build', help='Build an index from precomputed token embeddings')
    build.add_argument('index', help='Index directory to create')
    build.add_argument('--embeddings', required=True, help='.npy file of shape (num_embeddings, dim)')
    build.add_argument('--doclens', required=True, help='.npy or .json list of tokens per document')
    build.add_argument('--nbits', type=int, default=2)
    build.add_argument('--num-centroids', type=int, default=None)
    build.add_argument('--chunk-size', type=int, default=25_000)
    build.add_argument('--ncells', type=int, default=None)
    build.add_argument('--kmeans-niters', type=int, default=20)
    build.add_argument('--workers', type=int, default=None)
    build.set_defaults(func=cmd_build)

    search = subparsers.add_parser('search', help='Search an index with a query embedding matrix')
    search.add_argument('index', help='Index directory')
    search.add_argument('--query', required=True, help='.npy file of shape (query_tokens, dim)')
    search.add_argument('-k', type=int, default=None)
    search.add_argument('--ncells', type=int, default=None)
    search.add_argument('--timeout', type=float, default=None, help='Seconds before the search is aborted')
    search.set_defaults(func=cmd_search)

    info = subparsers.add_parser('info', help='Print index statistics')
    info.add_argument('index', help='Index directory')
    info.set_defaults(func=cmd_info)
    return parser

def main(argv=None):
    """Entry point for the maxsim-index command."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    logging.getLogger(__name__).debug(f"System info: {describe_device()}")

    try:
        args.func(args)
    except (MaxSimIndexError, OSError, ValueError) as e:
        print(f"\n  ❗️ {e}", file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        sys.exit(130)
