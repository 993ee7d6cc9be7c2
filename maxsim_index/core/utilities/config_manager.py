# maxsim_index/core/utilities/config_manager.py
import json
import logging
from maxsim_index.config import PathConfig

logger = logging.getLogger(__name__)

class ConfigManager:
    DEFAULT_SETTINGS = {
        'force_cpu': False,
        'force_gpu': False,
        'top_k': 10,       # Results per search
        'ncells': 2,       # Centroids probed per query token
        'num_workers': 1   # Chunk compression threads during builds
    }

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.load()
        return cls._instance

    def load(self):
        self.config_path = PathConfig.get_config_path()
        self.settings = self.DEFAULT_SETTINGS.copy()
        if not self.config_path.exists():
            return
        try:
            with open(self.config_path, 'r') as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable settings file {self.config_path}: {e}")
            return
        if not isinstance(stored, dict):
            logger.warning(f"Ignoring settings file {self.config_path}: expected a JSON object")
            return
        self.settings.update(stored)

    def save(self):
        with open(self.config_path, 'w') as f:
            json.dump(self.settings, f, indent=2)

    def get(self, key, default=None):
        return self.settings.get(key, default)

    def set(self, key, value):
        self.settings[key] = value
        self.save()

    def get_force_cpu(self):
        return self.get('force_cpu', False)

    def set_force_cpu(self, value):
        self.set('force_cpu', bool(value))

    def get_force_gpu(self):
        return self.get('force_gpu', False)

    def set_force_gpu(self, value):
        self.set('force_gpu', bool(value))

    def get_top_k(self) -> int:
        """Get number of results to return per search."""
        return self.get('top_k', 10)

    def set_top_k(self, value: int):
        """Set number of results (1-1M)."""
        value = max(1, min(1_000_000, int(value)))
        self.set('top_k', value)

    def get_ncells(self) -> int:
        return self.get('ncells', 2)

    def set_ncells(self, value: int):
        value = int(value)
        if value < 1:
            raise ValueError("ncells must be at least 1")
        self.set('ncells', value)

    def get_num_workers(self) -> int:
        return self.get('num_workers', 1)

    def set_num_workers(self, value: int):
        value = int(value)
        if value < 1:
            raise ValueError("num_workers must be at least 1")
        self.set('num_workers', value)

# Singleton access
config_manager = ConfigManager()
