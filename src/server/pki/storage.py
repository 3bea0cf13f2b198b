"""
通用存储：以扁平字符串为键存取 JSON 对象。

- InMemoryStorage: 进程内字典，线程安全
- FileStorage: 每个键一个 JSON 文件
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Protocol

from loguru import logger


class Storage(Protocol):
    def put(self, key: str, value: Dict[str, Any]) -> None: ...

    def get(self, key: str) -> Dict[str, Any] | None: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str) -> List[str]: ...


class InMemoryStorage:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Dict[str, Any]) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._data[key] = encoded

    def get(self, key: str) -> Dict[str, Any] | None:
        with self._lock:
            encoded = self._data.get(key)
        return json.loads(encoded) if encoded is not None else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list(self, prefix: str) -> List[str]:
        """返回 prefix 之下的键（去掉前缀）。"""
        with self._lock:
            return sorted(k[len(prefix):] for k in self._data if k.startswith(prefix))


class FileStorage:
    """
    键 "certs/example.com" 对应文件 <base_dir>/certs/example.com.json。
    写入先落临时文件再原子替换，避免读到半截内容。
    """

    _SUFFIX = ".json"

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise ValueError(f"非法的存储键: {key!r}")
        path = (self.base_dir / (key + self._SUFFIX)).resolve()
        if self.base_dir not in path.parents:
            raise ValueError(f"非法的存储键: {key!r}")
        return path

    def put(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path(key)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            try:
                with tmp.open("w", encoding="utf-8") as f:
                    json.dump(value, f, ensure_ascii=False)
                os.chmod(tmp, 0o600)
                os.replace(tmp, path)
            except Exception:
                tmp.unlink(missing_ok=True)
                raise
        logger.debug(f"已写入 {path}")

    def get(self, key: str) -> Dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            path.unlink(missing_ok=True)

    def list(self, prefix: str) -> List[str]:
        directory = self.base_dir / prefix.rstrip("/")
        if not directory.is_dir():
            return []
        return sorted(
            p.name[: -len(self._SUFFIX)]
            for p in directory.iterdir()
            if p.is_file() and p.name.endswith(self._SUFFIX)
        )
