import torch
from maxsim_index.config import VRAM_SAFETY_FACTOR

def free_vram_bytes(device_index: int = 0) -> int:
    """Free memory on a CUDA device, or 0 without CUDA."""
    if not torch.cuda.is_available():
        return 0
    return torch.cuda.mem_get_info(torch.device(f'cuda:{device_index}'))[0]

def max_score_elements(dtype_size: int = 4, safety_factor: float = VRAM_SAFETY_FACTOR) -> int:
    """
    How many score-matrix entries fit in free VRAM.

    Callers divide this by the number of centroids to get rows per matmul.
    Returns 0 when no GPU is available, meaning no limit.
    """
    usable_vram = free_vram_bytes() * safety_factor
    return int(usable_vram // dtype_size)

def describe_device() -> str:
    """One-line description of the accelerator, for CLI banners."""
    if torch.cuda.is_available():
        device = torch.cuda.get_device_name(0)
        mem = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        return f"GPU: {device} ({mem:.1f}GB VRAM)"
    return "No GPU detected"
