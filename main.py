#!/usr/bin/env python3
"""
群组知识库自动回复 - 主程序入口
Group Knowledge Auto-Reply - Main Entry Point

支持四种运行模式：
1. 知识导入模式（--import-knowledge）：从 JSON / YAML 文件导入知识条目
2. 向量同步模式（--sync-embeddings）：把未同步的知识条目写入向量索引
3. 问答模式（--ask）：让一条消息走完整个自动回复流程并输出决策
4. 超时巡检模式（--expire-issues）：把超时未处理的问题标记为 TIMEOUT

使用方法 Usage:
    # 导入知识
    python main.py --import-knowledge knowledge.json

    # 同步向量
    python main.py --sync-embeddings

    # 测试一条消息
    python main.py --ask "怎麼建立課程？" --group G1

    # 使用自定义配置
    python main.py --config my_config.yaml --ask "小幫手 怎麼退款" --group G1
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import yaml
from anthropic import AnthropicError
from openai import OpenAIError

# 确保项目根目录在Python路径中
project_root = Path(__file__).resolve().parent
sys.path.insert(0, str(project_root))

from autoreply.config import load_config, load_env_file
from autoreply.qa.config import AutoReplyConfig, load_autoreply_config
from autoreply.qa.models import InboundMessage


# 配置日志格式
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(verbose: bool = False) -> None:
    """
    配置日志系统
    Setup logging system

    Args:
        verbose: 是否启用详细日志（DEBUG级别）
                 Whether to enable verbose logging (DEBUG level)
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )

    # 降低第三方库的日志级别
    # Reduce log level for third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('anthropic').setLevel(logging.WARNING)
    logging.getLogger('chromadb').setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    解析命令行参数
    Parse command line arguments

    Returns:
        解析后的参数命名空间
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description='群组知识库自动回复 - 知识检索与回复决策',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
运行模式 Modes:
  --import-knowledge FILE  从 JSON / YAML 文件导入知识条目
  --sync-embeddings        同步知识条目向量
  --ask TEXT --group ID    处理一条消息并输出回复决策
  --expire-issues          把超时未处理的问题标记为 TIMEOUT

示例 Examples:
  python main.py --import-knowledge knowledge.yaml
  python main.py --sync-embeddings
  python main.py --ask "怎麼建立課程？" --group G1
  python main.py --ask "怎麼退款" --group U123 --direct --sender 王小明
        """
    )

    # 运行模式参数
    mode_group = parser.add_argument_group('运行模式 Mode Options')
    modes = mode_group.add_mutually_exclusive_group(required=True)
    modes.add_argument(
        '--import-knowledge',
        type=str,
        metavar='FILE',
        help='导入知识条目 / Import knowledge entries from FILE'
    )
    modes.add_argument(
        '--sync-embeddings',
        action='store_true',
        help='同步知识条目向量 / Sync knowledge embeddings'
    )
    modes.add_argument(
        '--ask',
        type=str,
        metavar='TEXT',
        help='处理一条消息 / Run one message through the pipeline'
    )
    modes.add_argument(
        '--expire-issues',
        action='store_true',
        help='标记超时问题 / Mark overdue issues as TIMEOUT'
    )

    # 问答模式参数
    ask_group = parser.add_argument_group('问答模式选项 Ask Options (仅用于 --ask)')
    ask_group.add_argument(
        '--group', '-g',
        type=str,
        default=None,
        help='群组 ID / Group ID'
    )
    ask_group.add_argument(
        '--direct',
        action='store_true',
        help='视为一对一私聊 / Treat as a direct chat'
    )
    ask_group.add_argument(
        '--sender',
        type=str,
        default='用戶',
        help='发送者名称 (默认: 用戶) / Sender display name'
    )

    # 配置参数
    config_group = parser.add_argument_group('配置选项 Config Options')
    config_group.add_argument(
        '--config', '-c',
        type=str,
        default='config.yaml',
        help='配置文件路径 (默认: config.yaml) / Config file path (default: config.yaml)'
    )
    config_group.add_argument(
        '--env',
        type=str,
        default=None,
        help='.env文件路径 (默认: 自动查找) / .env file path (default: auto-discover)'
    )

    # 通用参数
    general_group = parser.add_argument_group('通用选项 General Options')
    general_group.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='启用详细日志输出 / Enable verbose logging'
    )

    args = parser.parse_args(argv)
    if args.ask is not None and not args.group:
        parser.error('--ask 需要同时指定 --group / --ask requires --group')
    return args


def load_knowledge_file(path: Path) -> list[dict]:
    """
    读取知识文件

    支持条目列表，或带有 entries 键的对象。JSON 按 JSON 解析，其余按 YAML 解析。
    """
    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix.lower() == '.json':
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get('entries', [])
    if not isinstance(data, list):
        raise ValueError(f"知识文件格式错误，需为条目列表: {path}")
    return data


def run_import_mode(config: AutoReplyConfig, file_path: str, logger: logging.Logger) -> int:
    """
    运行知识导入模式
    Run knowledge import mode
    """
    from autoreply.repository import KnowledgeRepository

    path = Path(file_path)
    if not path.exists():
        logger.error(f"知识文件不存在: {file_path}")
        print(f"错误: 知识文件不存在: {file_path}", file=sys.stderr)
        return 1

    try:
        items = load_knowledge_file(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"读取知识文件失败: {e}")
        print(f"错误: 读取知识文件失败: {e}", file=sys.stderr)
        return 1

    repository = KnowledgeRepository(config.storage.knowledge_db)
    try:
        repository.init_db()
        result = repository.import_entries(items)
    finally:
        repository.close()

    print(f"✓ 新增 {result['created']} 筆, 更新 {result['updated']} 筆")
    for error in result['errors']:
        print(f"  ✗ {error}", file=sys.stderr)

    return 0 if not result['errors'] else 1


def run_sync_mode(config: AutoReplyConfig, logger: logging.Logger) -> int:
    """
    运行向量同步模式
    Run embedding sync mode
    """
    from autoreply.qa.embedding_service import create_embedding_service
    from autoreply.qa.pipeline import create_repository
    from autoreply.qa.vector_index import sync_embeddings

    repository = create_repository(config)
    try:
        if repository.index is None:
            print("错误: 向量索引不可用", file=sys.stderr)
            return 1

        embedding_service = create_embedding_service(config)
        result = sync_embeddings(repository, repository.index, embedding_service)
    finally:
        repository.close()

    print(f"✓ 已同步 {result['synced']} 筆, 失败 {result['failed']} 筆")
    return 0 if result['failed'] == 0 else 1


def run_ask_mode(
    config: AutoReplyConfig,
    args: argparse.Namespace,
    logger: logging.Logger
) -> int:
    """
    运行问答模式
    Run ask mode

    回复不实际发送，决策以 JSON 输出到标准输出。
    """
    from autoreply.qa.pipeline import build_pipeline

    try:
        pipeline = build_pipeline(config)
    except (RuntimeError, ValueError, OpenAIError, AnthropicError) as e:
        logger.error(f"初始化自动回复流程失败: {e}")
        print(f"错误: 初始化自动回复流程失败: {e}", file=sys.stderr)
        return 1

    message = InboundMessage(
        group_id=args.group,
        text=args.ask,
        sender_id=args.sender,
        sender_name=args.sender,
        is_direct=args.direct,
    )

    decision = pipeline.handle(message)
    print(json.dumps(decision.to_dict(), ensure_ascii=False, indent=2))
    return 0


def run_expire_mode(config: AutoReplyConfig, logger: logging.Logger) -> int:
    """
    运行超时巡检模式
    Run issue timeout sweep
    """
    from autoreply.qa.exceptions import PersistenceError
    from autoreply.qa.pipeline import expire_issues
    from autoreply.store import ReplyStore

    try:
        expired = expire_issues(ReplyStore(config.storage.reply_db))
    except PersistenceError as e:
        logger.error(f"超时巡检失败: {e}")
        print(f"错误: 超时巡检失败: {e}", file=sys.stderr)
        return 1

    print(f"✓ 已标记 {expired} 个超时问题")
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    主函数
    Main function

    Returns:
        退出码：0表示成功，非0表示失败
        Exit code: 0 for success, non-zero for failure
    """
    # 解析命令行参数
    args = parse_args(argv)

    # 配置日志
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    # 知识文件相对于调用时的工作目录
    if args.import_knowledge:
        args.import_knowledge = str(Path(args.import_knowledge).resolve())

    # 切换到项目根目录（确保相对路径正确）
    os.chdir(project_root)
    logger.debug(f"工作目录: {project_root}")

    # 加载配置；配置文件不存在时使用默认值
    config_path = Path(args.config)
    try:
        if config_path.exists():
            raw_config = load_config(str(config_path), args.env)
            logger.info(f"已加载配置文件: {config_path}")
        else:
            logger.warning(f"配置文件不存在，使用默认配置: {args.config}")
            load_env_file(args.env)
            raw_config = None
        config = load_autoreply_config(raw_config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"加载配置文件失败: {e}")
        print(f"错误: 加载配置文件失败: {e}", file=sys.stderr)
        return 1

    # 根据运行模式执行相应逻辑
    if args.import_knowledge:
        return run_import_mode(config, args.import_knowledge, logger)
    elif args.sync_embeddings:
        return run_sync_mode(config, logger)
    elif args.expire_issues:
        return run_expire_mode(config, logger)
    else:
        return run_ask_mode(config, args, logger)


if __name__ == '__main__':
    sys.exit(main())
