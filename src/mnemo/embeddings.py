"""
mnemo Embeddings -- the embedding provider seam.

The core only consumes vectors; it never inspects how they are produced.
This module provides:

- EmbeddingProvider: the interface the core calls (``embed`` / ``embed_batch``)
- OnnxEmbeddingProvider: local bge-small-en-v1.5 via ONNX Runtime, falling back
  to SentenceTransformers (PyTorch) when no ONNX model is present
- embed_with_timeout(provider, text, timeout): runs a provider call on a shared
  executor and turns timeouts and provider failures into EmbeddingUnavailable

There is no hash or zero-vector fallback. If no backend can embed, callers
get EmbeddingUnavailable.
"""

import hashlib
import logging
import os
import threading
import time as _time_module
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Dict, List, Optional, Any

import numpy as np

from mnemo.errors import EmbeddingUnavailable

__all__ = [
    "EmbeddingProvider",
    "OnnxEmbeddingProvider",
    "embed_with_timeout",
    "embed_batch_with_timeout",
    "normalize",
    "shutdown_executor",
]

logger = logging.getLogger("mnemo.embeddings")

_ONNX_DEFAULT_DIR = "~/.cache/mnemo/models/bge-small-en-v1.5-onnx"
_ONNX_FALLBACK_DIR = "~/.cache/mnemo/models/all-MiniLM-L6-v2-onnx"
_ST_MODEL_NAME = "BAAI/bge-small-en-v1.5"

_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300  # 5 minutes
_EMBEDDING_CACHE_MAX = 512


def normalize(vector) -> List[float]:
    """L2-normalize a vector. Raises ValueError for zero or non-finite vectors."""
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if not np.isfinite(norm) or norm == 0.0:
        raise ValueError("cannot normalize a zero or non-finite vector")
    return (arr / norm).tolist()


class EmbeddingProvider:
    """Maps text to a fixed-length float vector.

    Subclasses implement ``_embed_many``; they raise EmbeddingUnavailable (or
    any exception, which the timeout wrapper converts) when they cannot embed.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = self._embed_many(texts)
        out = []
        for vec in vectors:
            if len(vec) != self.dimension:
                raise EmbeddingUnavailable(
                    f"provider returned {len(vec)}-dim vector, expected {self.dimension}"
                )
            out.append(normalize(vec))
        return out

    def _embed_many(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError

    def info(self) -> Dict[str, Any]:
        return {"provider": type(self).__name__, "dimension": self.dimension}


class OnnxEmbeddingProvider(EmbeddingProvider):
    """bge-small-en-v1.5 through ONNX Runtime (~90MB RAM).

    Falls back to all-MiniLM-L6-v2 if the bge model is not downloaded, or to
    SentenceTransformers (PyTorch) if ONNX Runtime is unavailable. The model is
    loaded lazily on first use; after three failed loads a circuit breaker
    holds off further attempts for five minutes.
    """

    def __init__(self, model_dir: Optional[str] = None, dimension: int = 384):
        super().__init__(dimension=dimension)
        self._model_dir_override = model_dir or os.environ.get("MNEMO_ONNX_MODEL_DIR")
        self._model = None
        self._backend: Optional[str] = None  # "onnx" or "sentence-transformers"
        self._model_name = "bge-small-en-v1.5"
        self._attempts = 0
        self._first_failure = 0.0
        self._load_lock = threading.Lock()
        self._cache: OrderedDict = OrderedDict()
        self._cache_lock = threading.Lock()

    @property
    def backend(self) -> Optional[str]:
        return self._backend

    def info(self) -> Dict[str, Any]:
        return {
            "provider": type(self).__name__,
            "backend": self._backend,
            "model": self._model_name,
            "model_loaded": self._model is not None,
            "dimension": self.dimension,
            "cache_size": len(self._cache),
        }

    def reset(self) -> None:
        """Drop the loaded model, cache and circuit-breaker state."""
        with self._load_lock:
            self._model = None
            self._backend = None
            self._attempts = 0
            self._first_failure = 0.0
        with self._cache_lock:
            self._cache.clear()

    def _find_onnx_dir(self) -> Optional[Path]:
        """Checks in order: explicit/env override, bge-small (primary), MiniLM (fallback)."""
        candidates = []
        if self._model_dir_override:
            candidates.append((Path(self._model_dir_override), None))
        candidates.append((Path(os.path.expanduser(_ONNX_DEFAULT_DIR)), "bge-small-en-v1.5"))
        candidates.append((Path(os.path.expanduser(_ONNX_FALLBACK_DIR)), "all-MiniLM-L6-v2"))
        for model_dir, name in candidates:
            if (model_dir / "model.onnx").exists():
                if name:
                    self._model_name = name
                return model_dir
        return None

    def _load(self):
        """Lazy-load the model. Priority: ONNX Runtime > SentenceTransformer."""
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is not None:
                return self._model
            if self._attempts >= _MAX_LOAD_ATTEMPTS:
                if _time_module.monotonic() - self._first_failure < _CIRCUIT_BREAKER_COOLDOWN_S:
                    return None
                logger.info("Circuit breaker cooldown expired, retrying model load")
                self._attempts = 0
            self._attempts += 1
            if self._attempts == 1:
                self._first_failure = _time_module.monotonic()

            os.environ.setdefault("TQDM_DISABLE", "1")

            onnx_dir = self._find_onnx_dir()
            if onnx_dir is not None:
                try:
                    import onnxruntime as ort
                    from tokenizers import Tokenizer

                    tokenizer = Tokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                    tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                    tokenizer.enable_truncation(max_length=512)
                    sess_opts = ort.SessionOptions()
                    sess_opts.log_severity_level = 4
                    sess_opts.enable_cpu_mem_arena = False
                    session = ort.InferenceSession(
                        str(onnx_dir / "model.onnx"),
                        sess_options=sess_opts,
                        providers=["CPUExecutionProvider"],
                    )
                    self._model = (tokenizer, session)
                    self._backend = "onnx"
                    self._attempts = 0
                    logger.info("Loaded ONNX embedding model from %s", onnx_dir)
                    return self._model
                except Exception as e:
                    logger.warning("Failed to load ONNX model (attempt %d): %s", self._attempts, e)

            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(_ST_MODEL_NAME)
                self._backend = "sentence-transformers"
                self._model_name = _ST_MODEL_NAME
                self._attempts = 0
                logger.info("Loaded sentence-transformers model (PyTorch fallback)")
                return self._model
            except Exception as e:
                logger.warning("Failed to load sentence-transformers (attempt %d): %s", self._attempts, e)

            logger.warning(
                "No embedding model loaded after attempt %d/%d (onnx dir: %s)",
                self._attempts, _MAX_LOAD_ATTEMPTS, onnx_dir,
            )
            return None

    @staticmethod
    def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
        """Run one ONNX batch; returns an (n, dim) array of unit rows."""
        encodings = tokenizer.encode_batch(texts)
        input_ids = np.asarray([enc.ids for enc in encodings], dtype=np.int64)
        attention = np.asarray([enc.attention_mask for enc in encodings], dtype=np.int64)
        inputs = {"input_ids": input_ids, "attention_mask": attention}
        if any(arg.name == "token_type_ids" for arg in session.get_inputs()):
            inputs["token_type_ids"] = np.zeros_like(input_ids)
        out = session.run(None, inputs)
        # Some exports put the pooled output second.
        hidden = out[1] if len(out) > 1 else out[0]
        if hidden.ndim == 3:
            weights = attention[..., None].astype(np.float32)
            hidden = (hidden * weights).sum(axis=1) / np.maximum(weights.sum(axis=1), 1e-9)
        lengths = np.maximum(np.linalg.norm(hidden, axis=1, keepdims=True), 1e-9)
        return hidden / lengths

    def _embed_many(self, texts: List[str]) -> List[List[float]]:
        keys = [hashlib.md5(t.encode()).hexdigest() for t in texts]
        results: List[Optional[List[float]]] = [None] * len(texts)
        with self._cache_lock:
            for i, key in enumerate(keys):
                if key in self._cache:
                    self._cache.move_to_end(key)
                    results[i] = self._cache[key]
        missing = [i for i, r in enumerate(results) if r is None]
        if not missing:
            return results  # type: ignore[return-value]

        model = self._load()
        if model is None:
            raise EmbeddingUnavailable("no embedding backend available")

        batch = [texts[i] for i in missing]
        if self._backend == "onnx":
            tokenizer, session = model
            encoded = []
            for start in range(0, len(batch), 32):
                encoded.extend(self._onnx_encode(tokenizer, session, batch[start:start + 32]).tolist())
        else:
            encoded = [e.tolist() for e in model.encode(batch, normalize_embeddings=True, batch_size=32)]

        with self._cache_lock:
            for i, vec in zip(missing, encoded):
                results[i] = vec
                self._cache[keys[i]] = vec
            while len(self._cache) > _EMBEDDING_CACHE_MAX:
                self._cache.popitem(last=False)
        return results  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Timeout wrapper -- provider calls never block callers past their deadline
# ---------------------------------------------------------------------------

_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    """Get or create the thread pool executor for embedding operations."""
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            _EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="embedding")
        return _EXECUTOR


def shutdown_executor() -> None:
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is not None:
            _EXECUTOR.shutdown(wait=False)
            _EXECUTOR = None


def embed_batch_with_timeout(
    provider: EmbeddingProvider, texts: List[str], timeout: float
) -> List[List[float]]:
    """Run ``provider.embed_batch`` with a deadline.

    Raises EmbeddingUnavailable on timeout or on any provider failure. A timed
    out call keeps running in the background; its result is discarded.
    """
    future = _get_executor().submit(provider.embed_batch, texts)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        raise EmbeddingUnavailable(f"embedding timed out after {timeout:.1f}s") from e
    except EmbeddingUnavailable:
        raise
    except Exception as e:
        raise EmbeddingUnavailable(f"embedding provider failed: {e}") from e


def embed_with_timeout(provider: EmbeddingProvider, text: str, timeout: float) -> List[float]:
    return embed_batch_with_timeout(provider, [text], timeout)[0]
