"""
网络引擎常量配置模块

定义请求描述、拦截器、调度器使用的常量与默认配置
"""

# HTTP 方法常量
HTTP_METHOD_GET = "GET"
HTTP_METHOD_POST = "POST"
HTTP_METHOD_PUT = "PUT"
HTTP_METHOD_DELETE = "DELETE"
HTTP_METHOD_PATCH = "PATCH"
HTTP_METHOD_HEAD = "HEAD"
HTTP_METHOD_OPTIONS = "OPTIONS"
HTTP_METHOD_TRACE = "TRACE"

HTTP_METHODS = {
    HTTP_METHOD_GET,
    HTTP_METHOD_POST,
    HTTP_METHOD_PUT,
    HTTP_METHOD_DELETE,
    HTTP_METHOD_PATCH,
    HTTP_METHOD_HEAD,
    HTTP_METHOD_OPTIONS,
    HTTP_METHOD_TRACE,
}

# 默认参数编码方式下，将参数放入 URL 查询字符串的方法
QUERY_STRING_METHODS = {HTTP_METHOD_GET, HTTP_METHOD_HEAD, HTTP_METHOD_DELETE}

# 参数编码方式
ENCODING_DEFAULT = "default"  # 根据 HTTP 方法自动选择（查询字符串或表单）
ENCODING_URL_QUERY = "query"  # 始终放入 URL 查询字符串
ENCODING_FORM = "form"  # application/x-www-form-urlencoded 请求体
ENCODING_JSON = "json"  # application/json 请求体

PARAMETER_ENCODINGS = {ENCODING_DEFAULT, ENCODING_URL_QUERY, ENCODING_FORM, ENCODING_JSON}

# 键名转换策略
KEY_STRATEGY_DEFAULT = "use_default_keys"
KEY_STRATEGY_SNAKE_CASE = "convert_to_snake_case"  # camelCase -> snake_case
KEY_STRATEGY_CAMEL_CASE = "convert_to_camel_case"  # snake_case -> camelCase

KEY_STRATEGIES = {KEY_STRATEGY_DEFAULT, KEY_STRATEGY_SNAKE_CASE, KEY_STRATEGY_CAMEL_CASE}

# 日期编码策略
DATE_STRATEGY_ISO8601 = "iso8601"
DATE_STRATEGY_TIMESTAMP = "timestamp"

# 内容类型
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_FORM = "application/x-www-form-urlencoded; charset=utf-8"
CONTENT_TYPE_OCTET_STREAM = "application/octet-stream"
CONTENT_TYPE_MULTIPART = "multipart/form-data"

# 错误类型
ERROR_KIND_TRANSPORT = "transport"
ERROR_KIND_ENCODING = "encoding"
ERROR_KIND_PARAMETER_CONVERSION = "parameter_conversion"
ERROR_KIND_DECODING = "decoding"
ERROR_KIND_NO_CONNECTIVITY = "no_connectivity"
ERROR_KIND_GENERIC = "generic"

# 默认配置
DEFAULT_TIMEOUT = 30  # 默认超时时间（秒）
DEFAULT_RETRIES = 3  # 默认重试次数
DEFAULT_MAX_WORKERS = 10  # 默认最大工作线程数
DEFAULT_SUCCESS_CODES = tuple(range(200, 300))  # 默认视为成功的状态码

# 重试策略配置
RETRY_STATUS_FORCELIST = [429, 500, 502, 503, 504]  # 需要重试的 HTTP 状态码
RETRY_BACKOFF_FACTOR = 0.5  # 重试退避因子
RETRY_BACKOFF_MAX = 30  # 单次退避最大等待时间（秒）
RETRY_ALLOWED_METHODS = [
    HTTP_METHOD_HEAD,
    HTTP_METHOD_GET,
    HTTP_METHOD_PUT,
    HTTP_METHOD_DELETE,
    HTTP_METHOD_OPTIONS,
    HTTP_METHOD_TRACE,
    HTTP_METHOD_POST,
]

# 认证失败状态码，触发令牌刷新
AUTH_FAILURE_STATUS_CODES = {401}
DEFAULT_AUTH_SCHEME = "Bearer"

# 连接池配置
POOL_CONNECTIONS = 100  # 连接池大小
POOL_MAXSIZE = 100  # 连接池最大连接数

DEFAULT_POOL_CONFIG = {
    "pool_connections": POOL_CONNECTIONS,  # 连接池大小
    "pool_maxsize": POOL_MAXSIZE,  # 连接池最大连接数
}

# 网络可达性探测配置
REACHABILITY_PROBE_HOST = "8.8.8.8"
REACHABILITY_PROBE_PORT = 53
REACHABILITY_TIMEOUT = 3  # 探测超时时间（秒）
REACHABILITY_CACHE_TTL = 5  # 探测结果缓存时间（秒）

# 文件下载配置
DEFAULT_CHUNK_SIZE = 8192  # 默认分块大小（字节）
DEFAULT_FILENAME = "downloaded_file"  # 默认文件名

# 模拟调度器配置
DEFAULT_MOCK_DELAY = 0.5  # 模拟响应延迟（秒）
MOCK_FIXTURE_SUFFIX = ".json"
