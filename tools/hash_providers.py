from __future__ import annotations

import dataclasses
import hashlib
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import blake3
import xxhash

from .checksum_errors import SetupError


_CHUNK_SIZE = 1024 * 1024
_BLAKE3_KEY_SIZE = 32
DEFAULT_ALGORITHM = "sha1"


@dataclass(frozen=True)
class HashProvider:
    """Streaming digest contract used by the pipeline.

    ``factory`` receives the optional key and returns an object exposing
    ``update(bytes)`` and ``hexdigest()``. Providers that need the whole input
    at once set ``one_shot`` instead; the file is then read into memory.
    """

    name: str
    digest_size: int
    factory: Optional[Callable[[Optional[bytes]], Any]] = None
    chunk_size: int = _CHUNK_SIZE
    keyed: bool = False
    one_shot: Optional[Callable[[bytes, Optional[bytes]], str]] = None
    key: Optional[bytes] = None

    @property
    def streaming(self) -> bool:
        return self.one_shot is None

    def new(self) -> Any:
        if self.factory is None:
            raise TypeError(f"{self.name} does not support incremental hashing")
        return self.factory(self.key)

    def hexdigest(self, data: bytes) -> str:
        if self.one_shot is not None:
            return self.one_shot(data, self.key)
        state = self.new()
        state.update(data)
        return state.hexdigest()


def _blake2b(key: Optional[bytes]) -> Any:
    if key:
        return hashlib.blake2b(key=key)
    return hashlib.blake2b()


def _blake3(key: Optional[bytes]) -> Any:
    if key:
        return blake3.blake3(key=key)
    return blake3.blake3()


_REGISTRY: Dict[str, HashProvider] = {}
_REGISTRY_LOCK = threading.Lock()


def register_provider(provider: HashProvider) -> None:
    if provider.factory is None and provider.one_shot is None:
        raise ValueError(f"Provider {provider.name} has neither a factory nor a one-shot digest")
    with _REGISTRY_LOCK:
        _REGISTRY[provider.name.lower()] = provider


def available_algorithms() -> List[str]:
    return sorted(_REGISTRY)


def parse_key(text: Optional[str]) -> Optional[bytes]:
    """Decode a hex key supplied on the command line."""
    if text is None or text == "":
        return None
    try:
        key = bytes.fromhex(text.strip())
    except ValueError as exc:
        raise SetupError(f"Invalid key encoding, expected hex: {exc}") from exc
    if not key:
        raise SetupError("Key must not be empty")
    return key


def _check_key(provider: HashProvider, key: bytes) -> None:
    if not provider.keyed:
        raise SetupError(f"Algorithm {provider.name} does not accept a key")
    if provider.name == "blake3" and len(key) != _BLAKE3_KEY_SIZE:
        raise SetupError(f"blake3 keys must be exactly {_BLAKE3_KEY_SIZE} bytes")
    if provider.name == "blake2b" and len(key) > hashlib.blake2b.MAX_KEY_SIZE:
        raise SetupError(f"blake2b keys must be at most {hashlib.blake2b.MAX_KEY_SIZE} bytes")


def get_provider(name: str, key: Optional[bytes] = None) -> HashProvider:
    provider = _REGISTRY.get((name or "").lower())
    if provider is None:
        raise SetupError(f"Unknown hash algorithm: {name} (choose from {', '.join(available_algorithms())})")
    if key is None:
        return provider
    _check_key(provider, key)
    return dataclasses.replace(provider, key=key)


def hash_file(
    path: Union[str, Path],
    provider: HashProvider,
    stop_event: Optional[threading.Event] = None,
    pause_event: Optional[threading.Event] = None,
) -> str:
    with open(path, "rb") as handle:
        if not provider.streaming:
            return provider.hexdigest(handle.read())
        hasher = provider.new()
        while True:
            if stop_event is not None and stop_event.is_set():
                raise RuntimeError("hash cancelled")
            if pause_event is not None:
                while not pause_event.is_set():
                    if stop_event is not None and stop_event.is_set():
                        raise RuntimeError("hash cancelled")
                    pause_event.wait(0.1)
            chunk = handle.read(provider.chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


register_provider(HashProvider("sha1", 20, lambda key: hashlib.sha1()))
register_provider(HashProvider("sha256", 32, lambda key: hashlib.sha256()))
register_provider(HashProvider("blake2b", 64, _blake2b, keyed=True))
register_provider(HashProvider("blake3", 32, _blake3, keyed=True))
register_provider(HashProvider("xxh64", 8, lambda key: xxhash.xxh64()))
register_provider(HashProvider("xxh3_64", 8, lambda key: xxhash.xxh3_64()))
register_provider(HashProvider("xxh3_128", 16, lambda key: xxhash.xxh3_128()))


__all__ = [
    "DEFAULT_ALGORITHM",
    "HashProvider",
    "available_algorithms",
    "get_provider",
    "hash_file",
    "parse_key",
    "register_provider",
]
