"""任务队列包。

包含生产者/消费者两端：
- Producer: 写入共享存储的优先级队列，提供原子的状态迁移
- ConsumerPool: 带并发上限的轮询消费者，派发任务到抽取服务
- ExtractionClient: 抽取服务的 HTTP 客户端
"""

from .consumer import ConsumerPool
from .extraction import ExtractionClient
from .producer import Producer

__all__ = ["ConsumerPool", "ExtractionClient", "Producer"]
