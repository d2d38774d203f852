# File: src/evcam_remote/exceptions.py
"""
EVCam 远程控制 - 异常体系 (Exceptions)

定义库内统一使用的异常类，以便上层应用（CLI / 设备层）能进行精细的错误处理。
只有重连预算耗尽才会通过 on_error 通知操作者，其余错误均在本层消化。
"""


class RemoteError(Exception):
    """远程控制通道层所有内部异常的基类。

    上层应用可以通过捕获此异常来处理所有由 evcam-remote 抛出的已知错误。
    """

    pass


class ConfigError(RemoteError):
    """配置加载或校验失败。

    触发场景:
    1. 缺少必要字段 (如 bot_token / app_id)。
    2. 字段格式错误 (如 allowed_ids 无法解析)。
    3. 找不到配置文件或环境变量。
    """

    pass


class TransportError(RemoteError):
    """传输层错误 (I/O 级别)。

    触发场景:
    1. 连接建立失败或握手超时。
    2. HTTP 请求失败或返回非成功状态码。
    3. WebSocket 被动断开。

    注意: 此类错误通常是暂时的，连接状态机会按重连策略重试。
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """初始化传输错误。

        Args:
            message: 错误描述信息。
            status_code: 对端返回的 HTTP 状态码 (如有)。
        """
        super().__init__(message)
        self.status_code = status_code


class ConflictError(TransportError):
    """通道被其他消费者占用 (轮询后端 HTTP 409)。

    与普通传输错误不同：等待更久、使用独立的重试计数，
    且重试耗尽时只记录日志，不触发 on_error。
    """

    def __init__(self, message: str = "通道被其他实例占用") -> None:
        super().__init__(message, status_code=409)


class ProtocolError(RemoteError):
    """协议交互错误 (逻辑级别)。

    触发场景:
    1. 分片头部 (sum / seq) 取值非法。
    2. 事件载荷无法解析为 JSON 或缺少关键字段。

    处理方式: 记录日志并丢弃该帧，连接保持。
    """

    pass


class CodecError(ProtocolError):
    """二进制帧编解码失败 (字节流截断、长度越界、未知线型)。"""

    pass


class CommandError(RemoteError):
    """指令参数无法解析。

    仅在解析器内部使用，始终被就地消化 (回落默认值或视为未识别指令)，
    不会传播到解析器之外。
    """

    pass


class UploadError(RemoteError):
    """单个文件上传失败。

    由上传流水线按策略重试，最终折叠进批次报告，不会中断整个批次。
    """

    pass
