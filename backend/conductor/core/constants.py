"""
Core Constants Module

Technical parameters of the conductor core.
核心调度层的技术参数常量。
"""

# ============================================
# Execution Loop 参数
# ============================================

# 单次 run 内最大工具往返次数，超过即 ToolLoopExceeded
MAX_TOOL_ROUND_TRIPS = 25

# 整个 run 的最大尝试次数（含首次）
MAX_RUN_ATTEMPTS = 5

# 指数退避：初始 1s，翻倍，上限 30s
BACKOFF_INITIAL_SECONDS = 1.0
BACKOFF_FACTOR = 2.0
BACKOFF_MAX_SECONDS = 30.0

# 抖动比例（加性，非负）
BACKOFF_JITTER_RATIO = 0.1


# ============================================
# Tool 参数
# ============================================

# 单次工具调用的默认超时
DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0


# ============================================
# Orchestrator 参数
# ============================================

# 单棵任务树同时派发的子任务上限
MAX_CONCURRENT_SUBTASKS = 5


# ============================================
# 模型配置常量
# ============================================

DEFAULT_MODEL = "claude-sonnet-4-20250514"

DEFAULT_OPENAI_MODEL = "gpt-4o"

MAX_OUTPUT_TOKENS = 8192


# ============================================
# Stop reasons
# ============================================

class StopReason:
    """Normalized stop reasons reported by stream clients"""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
