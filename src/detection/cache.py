"""
Model artifact cache and the single read path for the active model.

Models are immutable once stored, so they are cached in Redis by model_id.
Only the small "which model is active" pointer is read from PostgreSQL on
every resolution, which keeps activation switches visible immediately.
"""

import json
from typing import Optional

import redis
import structlog

from .database import CustodyDatabase
from .methods.base import ModelComponents
from .models import DetectionConfig

logger = structlog.get_logger(__name__)


class RedisCache:
    """Redis cache backend for trained model artifacts"""

    def __init__(self, config: DetectionConfig):
        try:
            self.redis = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
            )
            self.ttl = config.cache_ttl_seconds
            self.redis.ping()  # Test connection
            logger.info("Redis cache initialized", host=config.redis_host, port=config.redis_port)
        except Exception as e:
            logger.error("Failed to initialize Redis", error=str(e))
            raise

    def save_model(self, model: ModelComponents) -> bool:
        """Save model to Redis"""
        if model.model_id is None:
            return False
        key = self._make_key(model.method_name, model.model_id)
        try:
            self.redis.setex(key, self.ttl, json.dumps(model.to_dict()))
            logger.debug("Model saved to Redis", key=key)
            return True
        except Exception as e:
            logger.error("Failed to save model to Redis", key=key, error=str(e))
            return False

    def load_model(self, method_name: str, model_id: int) -> Optional[ModelComponents]:
        """Load model from Redis"""
        key = self._make_key(method_name, model_id)
        try:
            data = self.redis.get(key)
            if data is None:
                return None
            return ModelComponents.from_dict(json.loads(data))
        except Exception as e:
            logger.error("Failed to load model from Redis", key=key, error=str(e))
            return None

    def _make_key(self, method_name: str, model_id: int) -> str:
        """Generate Redis key"""
        return f"custody:model:{method_name}:{model_id}"


def connect_cache(config: DetectionConfig) -> RedisCache | None:
    """RedisCache, or None when Redis is unreachable (models then load from PostgreSQL)"""
    try:
        return RedisCache(config)
    except redis.RedisError as e:
        logger.warning("Model cache disabled", error=str(e))
        return None


class ModelStore:
    """Resolves the active clustering model (database pointer + cached artifact)"""

    def __init__(self, db: CustodyDatabase, cache: RedisCache | None, method_name: str):
        self.db = db
        self.cache = cache
        self.method_name = method_name

    def get_active(self) -> ModelComponents | None:
        """Return the active model, or None when nothing has been trained yet"""
        model_id = self.db.load_active_model_id(self.method_name)
        if model_id is None:
            return None

        if self.cache is not None:
            model = self.cache.load_model(self.method_name, model_id)
            if model is not None:
                return model

        model = self.db.load_model(model_id)
        if model is not None and self.cache is not None:
            self.cache.save_model(model)
        return model

    def activate(self, model: ModelComponents) -> int | None:
        """Persist a freshly trained model as the new active version"""
        model_id = self.db.save_model(model)
        if model_id is None:
            return None
        model.model_id = model_id
        model.is_active = True
        if self.cache is not None:
            self.cache.save_model(model)
        return model_id
