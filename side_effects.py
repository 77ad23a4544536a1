"""
Best-effort 副作用

主要操作成功之後才會跑這裡的東西 (寫通知、即時推播)。
失敗只記 log,絕不影響主要操作的回應。
"""
from collections import namedtuple
import logging

logger = logging.getLogger(__name__)

SideEffectResult = namedtuple('SideEffectResult', ['ok', 'value', 'error'])


def fire_and_forget(description, func, *args, **kwargs):
    """
    執行一個 best-effort 副作用

    Returns:
        SideEffectResult: ok=False 時 error 是被吞掉的例外
    """
    try:
        value = func(*args, **kwargs)
        return SideEffectResult(True, value, None)
    except Exception as e:
        logger.error(f"Best-effort side effect failed ({description}): {str(e)}", exc_info=True)
        return SideEffectResult(False, None, e)
