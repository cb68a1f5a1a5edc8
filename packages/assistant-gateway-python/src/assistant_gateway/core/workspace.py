"""workspace 路径边界检查。"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from assistant_gateway.core.errors import WorkspaceBoundaryError


def resolve_within(root: Union[str, Path], path: Union[str, Path]) -> Path:
    """
    将 path 解析为绝对路径，并限制在 root 下。

    参数：
    - root：允许的根目录
    - path：相对（相对 root）或绝对路径

    异常：
    - `WorkspaceBoundaryError`：解析结果逃逸 root
    """

    base = Path(root).resolve()
    p = Path(path)
    if not p.is_absolute():
        p = base / p
    p = p.resolve()
    if not p.is_relative_to(base):
        raise WorkspaceBoundaryError(f"path escapes workspace boundary: {path}", details={"root": str(base)})
    return p


def workspace_relative(root: Union[str, Path], path: Union[str, Path]) -> str:
    """返回 path 相对 root 的 posix 形式（用于回复与审计）。"""

    return Path(path).resolve().relative_to(Path(root).resolve()).as_posix()
