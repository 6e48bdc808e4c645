"""
调度器进程

按固定间隔执行到期的定时任务。多个进程同时运行时依靠原子领取保证
同一任务在同一时刻只被一个进程执行。

用法:
    python scripts/run_scheduler.py [--interval 60] [--once]
"""
import sys
import os
import argparse
import logging
import time

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.config import settings
from shared.context import build_context

logger = logging.getLogger("scheduler")


def main():
    parser = argparse.ArgumentParser(description="执行到期的定时任务")
    parser.add_argument("--interval", type=int, default=60, help="轮询间隔（秒）")
    parser.add_argument("--once", action="store_true", help="只执行一轮")
    args = parser.parse_args()

    context = build_context()
    context.scheduler.ensure_builtin_tasks()
    logger.info("Scheduler started | interval=%s", args.interval)
    try:
        while True:
            results = context.scheduler.execute_due_tasks()
            if results:
                failed = sum(1 for r in results if not r["result"].get("success"))
                logger.info("Scheduler tick | executed=%s | failed=%s", len(results), failed)
            if args.once:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")
    finally:
        context.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    main()
