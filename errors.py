# errors.py
from __future__ import annotations


class PipelineError(RuntimeError):
    """アップロード/登録パイプラインの例外の基底クラス。"""


class SetupError(PipelineError):
    """鍵ファイルやディレクトリが無いなど、ネットワークに触る前に止めるべきエラー。"""


class CacheError(PipelineError):
    """キャッシュファイルが壊れていて読めない。"""


class RegistrationError(PipelineError):
    """レジストリアカウントの作成/初期化に失敗した（次回の実行で再試行）。"""


class ItemUploadError(PipelineError):
    """1アイテム分の手数料支払い or ストレージへのアップロードに失敗した。"""

    def __init__(self, index: str, message: str) -> None:
        super().__init__(f"item {index}: {message}")
        self.index = index


class StorageUploadError(PipelineError):
    """ストレージAPIが失敗した、またはレスポンスからアドレスを取り出せなかった。"""


class SubmissionError(PipelineError):
    """リトライ上限に達した、またはリトライ不可の理由でトランザクションが拒否された。"""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts
