from prometheus_client import Counter, Gauge, Histogram

# 队列各状态的任务数量（由 QueueMonitor 采样）
QUEUE_SIZE = Gauge(
    "crawler_queue_size",
    "Current number of tasks per queue state",
    ["state"],  # state: pending, processing, completed, failed
)

# 当前正在派发给抽取服务的任务数
INFLIGHT_TASKS = Gauge(
    "crawler_inflight_tasks",
    "Number of tasks currently dispatched to the extraction worker",
)

# 任务处理结果统计
TASKS_PROCESSED = Counter(
    "crawler_tasks_total",
    "Total number of processed task attempts",
    ["outcome"],  # outcome: completed, retried, failed
)

# 抽取请求耗时分布
TASK_DURATION = Histogram(
    "crawler_task_duration_seconds",
    "Time spent waiting for the extraction worker",
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

# 周期任务触发统计
TRIGGER_FIRINGS = Counter(
    "crawler_trigger_firings_total",
    "Total number of recurring trigger firings",
    ["status"],  # status: success, error, skipped
)

# 过期终态记录清理统计
RETENTION_PURGED = Counter(
    "crawler_retention_purged_total",
    "Total number of terminal records purged by the retention sweep",
    ["state"],  # state: completed, failed
)

# 事件循环延迟
EVENT_LOOP_LAG = Histogram(
    "crawler_event_loop_lag_seconds",
    "Delay between expected and actual wake-up of the monitor loop",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
)
