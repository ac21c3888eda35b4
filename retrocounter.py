#!/usr/bin/env python3
"""
RetroCounter - 把博客统计区块渲染成 90 年代风格的计数器

从第三方 "blog stats" 区块渲染出的 HTML 中提取访问数，
交给调用方提供的渲染函数绘制成定宽计数器。提取失败时原样返回。
"""

import sys, time, json, hashlib, argparse
import html as htmllib
from pathlib import Path
from dataclasses import dataclass
from typing import Callable, Iterator, Optional
import re

import yaml

# -------- 数据类 --------
@dataclass
class Candidate:
    value: int
    pos: int

# -------- 工具函数 --------
def read_file(p: Path): return p.read_text(encoding='utf-8')
def write_file(p: Path, t: str):
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(t, encoding='utf-8')
def compute_hash(s: str): return hashlib.sha1(s.encode('utf-8', 'surrogatepass')).hexdigest()

# -------- 配置 --------
ROOT = Path('.')
CONFIG_FILE = ROOT / 'config.yml'
CACHE_FILE = ROOT / '.retrocounter_cache.json'

CACHE_PREFIX = 'retrocounter_stats_'
LEGACY_CACHE_KEY = 'retrocounter_cached_stats'
CACHE_TTL = 3600
MAX_STATS_VALUE = 1_000_000_000_000

def load_config(path=CONFIG_FILE):
    cfg_file = Path(path)
    if cfg_file.exists():
        try:
            cfg = yaml.safe_load(cfg_file.read_text(encoding="utf-8")) or {}
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            print(f"[配置错误] {e}")
            return {}
        if not isinstance(cfg, dict):
            print(f"[配置错误] {cfg_file} 顶层必须是映射")
            return {}
        return cfg
    return {}

# -------- 文本规整 --------
SCRIPT_RE = re.compile(r'<script[^>]*>.*?</script>', re.I | re.S)
STYLE_RE = re.compile(r'<style[^>]*>.*?</style>', re.I | re.S)
COMMENT_RE = re.compile(r'<!--.*?-->', re.S)
TAG_RE = re.compile(r'<[^>]*>')
SPACE_RE = re.compile(r'\s+')

def normalize(html: str) -> str:
    """去掉 script/style 及全部标签，只保留文本并压缩空白"""
    if not isinstance(html, str):
        return ""
    text = SCRIPT_RE.sub('', html)
    text = STYLE_RE.sub('', text)
    text = COMMENT_RE.sub('', text)
    text = TAG_RE.sub('', text)
    text = htmllib.unescape(text)
    return SPACE_RE.sub(' ', text).strip()

# -------- 数字扫描 --------
# 1,142 / 1.142 / 1 142 这类带千分位的写法，或任意长度的纯数字
NUMBER_RE = re.compile(r'\d{1,3}(?:[,.\s]\d{3})+(?!\d)|\d+', re.ASCII)
SEPARATOR_RE = re.compile(r'[,.\s]')
DATA_COUNT_RE = re.compile(r'data-count=["\'](\d+)["\']', re.ASCII)

def normalize_number(token: str) -> Optional[int]:
    cleaned = SEPARATOR_RE.sub('', token)
    if not (cleaned.isascii() and cleaned.isdigit()):
        return None
    # 超过上限位数的不做 int 转换，直接给一个越界值交给 sanitize 拒绝
    if len(cleaned.lstrip('0')) > len(str(MAX_STATS_VALUE)):
        return MAX_STATS_VALUE + 1
    return int(cleaned)

class Candidates:
    """可重复迭代的候选数字序列，每次迭代都从头惰性扫描"""

    def __init__(self, text: str):
        self.text = text if isinstance(text, str) else ""

    def __iter__(self) -> Iterator[Candidate]:
        for m in NUMBER_RE.finditer(self.text):
            value = normalize_number(m.group())
            if value is None:
                continue
            yield Candidate(value, m.start())

def scan(text: str) -> Candidates:
    return Candidates(text)

# -------- 取值策略 --------
def is_year(value: int) -> bool:
    return 1900 <= value <= 2099 and len(str(value)) == 4

def first_candidate(text: str) -> Optional[int]:
    """"1,142 hits" 这种 数字+标签 的写法：取文本中第一个数字（不过滤年份）"""
    m = NUMBER_RE.search(text)
    if not m:
        return None
    return normalize_number(m.group())

def largest_non_year(text: str) -> Optional[int]:
    values = [c.value for c in scan(text) if not is_year(c.value)]
    return max(values) if values else None

STRATEGIES = (first_candidate, largest_non_year)

def choose(text: str, strategies=STRATEGIES) -> Optional[int]:
    if not isinstance(text, str):
        return None
    for strategy in strategies:
        value = strategy(text)
        if value is not None:
            return value
    return None

# -------- 数值校验 --------
def sanitize(raw) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError, OverflowError):
        return None
    if value < 0 or value > MAX_STATS_VALUE:
        return None
    return value

# -------- 缓存 --------
class TransientStore:
    """带过期时间的键值存储，持久化为一个 JSON 文件"""

    def __init__(self, path=CACHE_FILE, clock=time.time):
        self.path = Path(path)
        self.clock = clock
        self.data = self._load()

    def _load(self):
        if self.path.exists():
            try:
                data = json.loads(read_file(self.path))
            except (OSError, ValueError):
                return {}
            return data if isinstance(data, dict) else {}
        return {}

    def _save(self):
        write_file(self.path, json.dumps(self.data, indent=2))

    # 每次读写前都重新载入文件，别的进程做的清除不会被覆盖回去
    def get(self, key, default=None):
        self.data = self._load()
        if key not in self.data:
            return default
        entry = self.data[key]
        # 旧版直接存放的裸值，没有过期时间
        if not isinstance(entry, dict):
            return entry
        expires = entry.get("expires")
        if not isinstance(expires, (int, float)) or expires <= self.clock():
            del self.data[key]
            return default
        return entry.get("value")

    def set(self, key, value, ttl=CACHE_TTL):
        self.data = self._load()
        self.data[key] = {"value": value, "expires": self.clock() + ttl}
        self._save()

    def delete(self, key) -> bool:
        self.data = self._load()
        if key not in self.data:
            return False
        del self.data[key]
        self._save()
        return True

    def delete_prefix(self, prefix):
        self.data = self._load()
        keys = [k for k in self.data if k.startswith(prefix)]
        for k in keys:
            del self.data[k]
        if keys:
            self._save()
        return len(keys)

MISSING = object()

class StatsCache:
    def __init__(self, store: TransientStore, prefix=CACHE_PREFIX):
        self.store = store
        self.prefix = prefix

    def key_for(self, fragment: str) -> str:
        return self.prefix + compute_hash(fragment)

    def get(self, key) -> Optional[int]:
        cached = self.store.get(key, MISSING)
        if cached is MISSING:
            return None
        value = sanitize(cached)
        if value is None:
            # 内容损坏或越界，删掉当作未命中
            self.clear(key)
        return value

    def put(self, key, value: int, ttl=CACHE_TTL):
        # 写缓存失败不影响提取结果
        try:
            self.store.set(key, value, ttl)
        except (OSError, TypeError, ValueError) as e:
            print(f"[缓存错误] 写入 {key} 失败: {e}")

    def clear(self, key=LEGACY_CACHE_KEY) -> bool:
        try:
            return self.store.delete(key)
        except OSError as e:
            print(f"[缓存错误] 删除 {key} 失败: {e}")
            return False

    def clear_all(self):
        try:
            n = self.store.delete_prefix(self.prefix)
        except OSError as e:
            print(f"[缓存错误] 清空缓存失败: {e}")
            return 0
        self.clear(LEGACY_CACHE_KEY)
        return n

# -------- 提取器 --------
class StatsExtractor:
    def __init__(self, cache: Optional[StatsCache] = None, strategies=STRATEGIES):
        self.cache = cache
        self.strategies = strategies

    def extract(self, html) -> Optional[int]:
        """返回区块里的访问数；任何失败都返回 None，从不抛异常"""
        if not isinstance(html, str) or not html.strip():
            return None

        key = None
        if self.cache is not None:
            key = self.cache.key_for(html)
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        value = self.extract_from_html(html)

        if value is not None and self.cache is not None:
            self.cache.put(key, value)
        return value

    def extract_from_html(self, html: str) -> Optional[int]:
        # data-count 属性最可靠
        m = DATA_COUNT_RE.search(html)
        if m:
            return sanitize(m.group(1))
        return sanitize(choose(normalize(html), self.strategies))

# -------- 主程序 --------
class RetroCounter:
    def __init__(self, config_path=CONFIG_FILE):
        self.config_path = Path(config_path)
        self.initialized = False
        self.config = {}
        self.cache = None
        self.extractor = None

    def init(self):
        if self.initialized:
            return
        self.config = load_config(self.config_path)
        store = TransientStore(ROOT / self.config.get("cache_file", CACHE_FILE.name))
        self.cache = StatsCache(store)
        use_cache = self.config.get("cache_enabled", True)
        self.extractor = StatsExtractor(self.cache if use_cache else None)
        self.initialized = True

    def extract(self, html) -> Optional[int]:
        self.init()
        return self.extractor.extract(html)

    def intercept(self, fragment: str, render: Callable[[int], str], editor_context=False) -> str:
        """渲染管线钩子：能提取到数值就换成计数器，否则原样返回"""
        if editor_context or not fragment:
            return fragment
        value = self.extract(fragment)
        if value is None:
            return fragment
        try:
            return render(value)
        except Exception as e:
            print(f"[渲染错误] {getattr(render, '__name__', render)}: {e}")
            return fragment

    def clear_cache(self, key=None):
        """设置变更 / 卸载时调用"""
        self.init()
        if key is None:
            return self.cache.clear_all()
        return int(self.cache.clear(key))

# -------- CLI --------
def main(argv=None):
    parser = argparse.ArgumentParser(prog="retrocounter")
    parser.add_argument("cmd", choices=["extract", "clear"], nargs="?", default="extract")
    parser.add_argument("file", nargs="?", help="区块 HTML 文件，缺省读标准输入")
    parser.add_argument("--config", default=str(CONFIG_FILE), help="配置文件路径")
    parser.add_argument("--no-cache", action="store_true", help="不读写缓存")
    parser.add_argument("--key", help="只清除指定的缓存键")
    args = parser.parse_args(argv)

    rc = RetroCounter(args.config)

    if args.cmd == "clear":
        n = rc.clear_cache(args.key)
        print(f"已清除 {n} 条缓存的统计数值。")
        return 0

    if args.file:
        try:
            html = read_file(Path(args.file))
        except (OSError, UnicodeDecodeError) as e:
            print(f"[读取错误] {args.file}: {e}")
            return 1
    else:
        html = sys.stdin.read()

    if args.no_cache:
        value = StatsExtractor().extract(html)
    else:
        value = rc.extract(html)

    if value is None:
        print("无法提取")
        return 1
    print(value)
    return 0

if __name__=="__main__": sys.exit(main())
