"""
下载持久化模块

将下载请求的响应内容以流式方式写入目标位置
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from urllib.parse import unquote, urlparse

from network_engine.constants import DEFAULT_FILENAME
from network_engine.task import DownloadDestinationSpec

logger = logging.getLogger(__name__)


class BasePersistence(ABC):
    """持久化协作者基类，定义写入下载内容的接口。"""

    @abstractmethod
    def write(self, destination: DownloadDestinationSpec, chunks: Iterable[bytes], url: str = "") -> str:
        """
        写入下载内容

        参数:
            destination: 下载目标描述
            chunks: 响应内容分块
            url: 请求 URL，用于推导默认文件名

        返回:
            最终文件路径

        异常:
            OSError: 写入失败时抛出
        """


class FileSystemPersistence(BasePersistence):
    """
    文件系统持久化

    目标目录为空时使用系统临时目录；文件名为空时取 URL 的最后一段路径。
    目标文件已存在且未要求覆盖时抛出 FileExistsError

    参数:
        default_directory: 覆盖系统临时目录的默认保存目录
        default_filename: URL 中取不到文件名时使用的默认文件名
    """

    default_filename: str = DEFAULT_FILENAME

    def __init__(self, default_directory: str | None = None, default_filename: str | None = None):
        self.default_directory = default_directory
        self.default_filename = default_filename or self.default_filename

    def resolve_path(self, destination: DownloadDestinationSpec, url: str = "") -> str:
        """计算下载文件的最终路径"""
        directory = destination.directory or self.default_directory or tempfile.gettempdir()
        filename = destination.filename
        if not filename and url:
            segment = unquote(urlparse(url).path.rstrip("/").rsplit("/", 1)[-1])
            filename = segment or None
        return os.path.join(directory, filename or self.default_filename)

    def write(self, destination: DownloadDestinationSpec, chunks: Iterable[bytes], url: str = "") -> str:
        file_path = self.resolve_path(destination, url)
        directory = os.path.dirname(file_path)

        if destination.create_intermediate_directories:
            os.makedirs(directory, exist_ok=True)

        if os.path.exists(file_path):
            if not destination.remove_previous_file:
                raise FileExistsError(f"Download destination already exists: {file_path}")
            os.remove(file_path)

        logger.debug(f"Writing response content to file: {file_path}")
        # 先写临时文件，完成后再移动到目标位置，避免留下不完整的文件
        partial_path = f"{file_path}.part"
        try:
            with open(partial_path, "wb") as f:
                for chunk in chunks:
                    if chunk:
                        f.write(chunk)
            os.replace(partial_path, file_path)
        except BaseException:
            if os.path.exists(partial_path):
                os.remove(partial_path)
            raise
        return file_path
