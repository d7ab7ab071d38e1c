"""Constants and configuration for vault yield resolution."""

# Fixed-point scales used by lending protocols.
RAY = 10**27  # Aave rates
WAD = 10**18  # Compound / Morpho rates and fees
SECONDS_PER_YEAR = 31_536_000
DAYS_PER_YEAR = 365
COMPOUND_V2_BLOCKS_PER_YEAR = 2_102_400

# Data provider endpoints.
DEFILLAMA_POOLS_URL = "https://yields.llama.fi/pools"
VAULTS_FYI_BASE_URL = "https://api.vaults.fyi"
VAULTS_FYI_DETAILED_VAULTS_PATH = "/v2/detailed-vaults"

# Request timeouts in seconds.
DEFILLAMA_TIMEOUT = 20
VAULTS_FYI_TIMEOUT = 10
DEFAULT_RPC_TIMEOUT = 30

VAULTS_FYI_PER_PAGE = 100
VAULTS_FYI_MAX_PAGES = 5
VAULTS_FYI_NETWORKS = ("mainnet", "base", "arbitrum", "optimism", "polygon")
PROVIDER_MIN_TVL_USD = 100_000

# DefiLlama pools are filtered down to the chains we can read on-chain.
DEFILLAMA_TARGET_CHAINS = frozenset({"ethereum", "polygon", "arbitrum", "base", "optimism"})
DEFILLAMA_MAX_APY_PERCENT = 100

# Projects and symbol hints that indicate a DEX LP position rather than a lending vault.
LP_PROJECTS = (
    "uniswap",
    "curve",
    "balancer",
    "sushiswap",
    "pancakeswap",
    "trader-joe",
    "kyberswap",
    "camelot",
    "velodrome",
    "aerodrome",
)
LP_SYMBOL_HINTS = ("usdc", "eth")

# Provider network names, chain ids and CAIP-2 ids mapped to one canonical vocabulary.
CHAIN_ALIASES: dict[str, str] = {
    "ethereum": "ethereum",
    "mainnet": "ethereum",
    "eth": "ethereum",
    "1": "ethereum",
    "eip155:1": "ethereum",
    "base": "base",
    "8453": "base",
    "eip155:8453": "base",
    "arbitrum": "arbitrum",
    "arbitrum-one": "arbitrum",
    "arbitrum one": "arbitrum",
    "42161": "arbitrum",
    "eip155:42161": "arbitrum",
    "optimism": "optimism",
    "op": "optimism",
    "op mainnet": "optimism",
    "10": "optimism",
    "eip155:10": "optimism",
    "polygon": "polygon",
    "matic": "polygon",
    "polygon-pos": "polygon",
    "137": "polygon",
    "eip155:137": "polygon",
    "avalanche": "avalanche",
    "avax": "avalanche",
    "43114": "avalanche",
    "eip155:43114": "avalanche",
    "bsc": "bsc",
    "binance": "bsc",
    "bnb": "bsc",
    "56": "bsc",
    "eip155:56": "bsc",
    "gnosis": "gnosis",
    "xdai": "gnosis",
    "100": "gnosis",
    "eip155:100": "gnosis",
}

# Provider protocol name variants mapped to canonical slugs.
PROTOCOL_ALIASES: dict[str, str] = {
    "aave": "aave-v3",
    "aave-v3": "aave-v3",
    "aavev3": "aave-v3",
    "aave-v2": "aave-v2",
    "aavev2": "aave-v2",
    "compound": "compound-v3",
    "compound-v3": "compound-v3",
    "compoundv3": "compound-v3",
    "compound-v2": "compound-v2",
    "compoundv2": "compound-v2",
    "morpho": "morpho-blue",
    "morpho-blue": "morpho-blue",
    "morpho-v1": "morpho-blue",
    "yearn": "yearn",
    "yearn-finance": "yearn",
    "yearn-v2": "yearn",
    "yearn-v3": "yearn",
    "curve-dex": "curve",
    "curve": "curve",
    "convex-finance": "convex",
    "convex": "convex",
    "lido": "lido",
    "makerdao": "maker",
    "maker": "maker",
    "balancer-v2": "balancer",
    "balancer": "balancer",
    "pancakeswap-amm": "pancakeswap",
    "pancakeswap-amm-v3": "pancakeswap",
    "trader-joe-dex": "trader-joe",
    "fluid": "fluid-lending",
    "fluid-lending": "fluid-lending",
    "euler": "euler-v2",
    "euler-v2": "euler-v2",
    "spark": "spark",
    "sparklend": "spark",
}

# Closed protocol family table. Anything missing here resolves to the unknown family.
PROTOCOL_FAMILIES: dict[str, str] = {
    "aave-v3": "aave",
    "aave-v2": "aave",
    "spark": "aave",
    "compound-v3": "compound",
    "compound-v2": "compound",
    "morpho-blue": "morpho",
    "yearn": "yearn",
    "euler-v2": "erc4626",
    "fluid-lending": "erc4626",
    "gearbox": "erc4626",
}

# Protocol reputation subscores (0..100).
PROTOCOL_REPUTATION: dict[str, int] = {
    "aave-v3": 95,
    "aave-v2": 92,
    "compound-v3": 94,
    "compound-v2": 90,
    "yearn": 85,
    "convex": 83,
    "curve": 87,
    "lido": 88,
    "maker": 89,
    "uniswap-v3": 75,
    "sushiswap": 72,
    "balancer": 78,
    "morpho-blue": 82,
    "fluid-lending": 75,
    "aerodrome-slipstream": 45,
    "pancakeswap": 65,
    "trader-joe": 68,
}
UNKNOWN_PROTOCOL_SCORE = 50
MISSING_PROTOCOL_SCORE = 30

# Chain maturity multipliers, scaled to 0..100 by the risk scorer.
CHAIN_MATURITY: dict[str, float] = {
    "ethereum": 1.0,
    "base": 0.95,
    "arbitrum": 0.9,
    "optimism": 0.9,
    "polygon": 0.85,
    "avalanche": 0.8,
    "bsc": 0.7,
}
UNKNOWN_CHAIN_MATURITY = 0.7
MISSING_CHAIN_SCORE = 50

# (lower bound in USD, subscore), checked top-down.
TVL_SCORE_BANDS: tuple[tuple[int, int], ...] = (
    (100_000_000, 95),
    (50_000_000, 90),
    (10_000_000, 85),
    (5_000_000, 75),
    (1_000_000, 65),
    (500_000, 55),
    (100_000, 45),
)
TVL_FLOOR_SCORE = 30
NO_TVL_SCORE = 20

# (upper bound in percent, subscore), checked top-down.
APY_SCORE_BANDS: tuple[tuple[float, int], ...] = (
    (5, 95),
    (10, 90),
    (20, 80),
    (50, 60),
    (100, 40),
    (200, 25),
)
APY_CEILING_SCORE = 10
NO_APY_SCORE = 20

SOURCE_RELIABILITY: dict[str, int] = {
    "onchain": 95,
    "vaultsfyi": 90,
    "defillama": 85,
}
UNKNOWN_SOURCE_SCORE = 70

RISK_WEIGHTS: dict[str, float] = {
    "protocol": 0.40,
    "tvl": 0.25,
    "apy": 0.20,
    "chain": 0.10,
    "source": 0.05,
}

# (minimum score, category), checked top-down.
RISK_CATEGORY_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (85, "low"),
    (70, "medium-low"),
    (55, "medium"),
    (40, "medium-high"),
)
RISK_TOLERANCE_MIN_SCORE: dict[str, int] = {
    "low": 85,
    "medium-low": 70,
    "medium": 55,
    "medium-high": 40,
    "high": 0,
}
FALLBACK_RISK_SCORE = 50

# On-chain validation.
VALIDATION_MIN_TVL_USD = 10_000_000
VALIDATION_MAX_CANDIDATES = 20
VALIDATION_BATCH_SIZE = 5
VALIDATION_BATCH_DELAY_S = 1.0
VALIDATION_WEIGHTS: dict[str, int] = {
    "has_real_address": 30,
    "asset_match": 25,
    "name_similarity": 20,
    "tvl_reasonable": 15,
}
FRESHNESS_BONUS: dict[str, int] = {"fresh": 10, "recent": 5, "stale": 0, "unknown": 0}
FRESH_MAX_AGE_S = 300
RECENT_MAX_AGE_S = 3600
NAME_SIMILARITY_THRESHOLD = 0.3
TVL_RATIO_THRESHOLD = 0.5
# (min on-chain total, min API TVL) pairs under which both values count as substantial.
TVL_SUBSTANTIAL_PAIRS: tuple[tuple[int, int], ...] = ((1_000, 100_000), (100_000, 1_000_000))
# (minimum score, tier), checked top-down.
CONFIDENCE_TIERS: tuple[tuple[int, str], ...] = (
    (80, "high"),
    (60, "medium-high"),
    (40, "medium"),
    (20, "medium-low"),
)

# Yield calculation.
CALCULATION_BATCH_SIZE = 3
CALCULATION_BATCH_DELAY_S = 2.0
ENHANCED_CANDIDATES_PER_KIND = 3
CALCULATED_APY_MIN_CONFIDENCE = 0.6
PROTOCOL_METHOD_PREFERRED_CONFIDENCE = 0.8
HISTORY_WINDOWS_DAYS = (7, 30)
GENERIC_HISTORY_DAYS = 1
GENERIC_DEFAULT_APY = 0.04
GENERIC_DEFAULT_CONFIDENCE = 0.3
GENERIC_HISTORY_CONFIDENCE = 0.5

BLOCKS_PER_DAY: dict[str, int] = {
    "ethereum": 7_200,
    "polygon": 43_200,
    "arbitrum": 7_200,
    "base": 43_200,
    "optimism": 86_400,
    "avalanche": 43_200,
}
DEFAULT_BLOCKS_PER_DAY = 7_200

AAVE_V3_POOLS: dict[str, str] = {
    "ethereum": "0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2",
    "polygon": "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
    "arbitrum": "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
    "optimism": "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
    "avalanche": "0x794a61358D6845594F94dc1DB02A252b5b4814aD",
    "base": "0xA238Dd80C259a72e81d7e4664a9801593F98d1c5",
}
MORPHO_BLUE: dict[str, str] = {
    "ethereum": "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
    "base": "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb",
}

# Kinked interest rate model used when a protocol only exposes balances.
KINK_OPTIMAL_UTILIZATION = 0.8
KINK_BASE_RATE = 0.02
KINK_SLOPE = 0.05
KINK_JUMP_BONUS = 0.04
KINK_JUMP_SLOPE = 0.5
COMPOUND_RESERVE_FACTOR = 0.1

# Typical APY ranges for vaults known only by a provider-issued id: (low, high, confidence).
# These are coarse heuristics, not measurements.
HEURISTIC_APY_BANDS: dict[str, tuple[float, float, float]] = {
    "aave": (0.02, 0.05, 0.6),
    "compound": (0.015, 0.04, 0.6),
    "morpho": (0.025, 0.065, 0.5),
    "yearn": (0.03, 0.08, 0.4),
}
HEURISTIC_DEFAULT_BAND: tuple[float, float, float] = (0.04, 0.04, 0.3)

# Resolution.
MIN_RESULT_LIMIT = 1
MAX_RESULT_LIMIT = 50
DEFAULT_RESULT_LIMIT = 10
CONFIDENCE_GAP_POINTS = 20
ONCHAIN_SOURCE_CONFIDENCE = 95
STORE_MAX_AGE_S = 900

# Cache configuration
CACHE_DIR_NAME = ".vaults_yield_cache"
CACHE_VERSION = "1"  # Increment to invalidate all caches
PROVIDER_CACHE_TTL_S = 300
ONCHAIN_CACHE_TTL_S = 600
ESTIMATE_CACHE_TTL_S = 600
RISK_CACHE_TTL_S = 3600

# Minimal ABI covering every view function the chain reader may call.
# Sources: OpenZeppelin ERC20/ERC4626, Aave V3 Pool/AToken, Compound III Comet,
# Compound V2 CToken, Yearn V2 Vault, Morpho Blue.
VIEW_ABI: list[dict] = [
    {
        "inputs": [],
        "name": "name",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "symbol",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "asset",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalAssets",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "token",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "pricePerShare",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "UNDERLYING_ASSET_ADDRESS",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "asset", "type": "address"}],
        "name": "getReserveData",
        "outputs": [
            {
                "components": [
                    {
                        "components": [{"internalType": "uint256", "name": "data", "type": "uint256"}],
                        "internalType": "struct DataTypes.ReserveConfigurationMap",
                        "name": "configuration",
                        "type": "tuple",
                    },
                    {"internalType": "uint128", "name": "liquidityIndex", "type": "uint128"},
                    {"internalType": "uint128", "name": "currentLiquidityRate", "type": "uint128"},
                    {"internalType": "uint128", "name": "variableBorrowIndex", "type": "uint128"},
                    {"internalType": "uint128", "name": "currentVariableBorrowRate", "type": "uint128"},
                    {"internalType": "uint128", "name": "currentStableBorrowRate", "type": "uint128"},
                    {"internalType": "uint40", "name": "lastUpdateTimestamp", "type": "uint40"},
                    {"internalType": "uint16", "name": "id", "type": "uint16"},
                    {"internalType": "address", "name": "aTokenAddress", "type": "address"},
                    {"internalType": "address", "name": "stableDebtTokenAddress", "type": "address"},
                    {"internalType": "address", "name": "variableDebtTokenAddress", "type": "address"},
                    {"internalType": "address", "name": "interestRateStrategyAddress", "type": "address"},
                    {"internalType": "uint128", "name": "accruedToTreasury", "type": "uint128"},
                    {"internalType": "uint128", "name": "unbacked", "type": "uint128"},
                    {"internalType": "uint128", "name": "isolationModeTotalDebt", "type": "uint128"},
                ],
                "internalType": "struct DataTypes.ReserveData",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "baseToken",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalBorrow",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "utilization", "type": "uint256"}],
        "name": "getSupplyRate",
        "outputs": [{"internalType": "uint64", "name": "", "type": "uint64"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "utilization", "type": "uint256"}],
        "name": "getBorrowRate",
        "outputs": [{"internalType": "uint64", "name": "", "type": "uint64"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "underlying",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "supplyRatePerBlock",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "Id", "name": "id", "type": "bytes32"}],
        "name": "market",
        "outputs": [
            {"internalType": "uint128", "name": "totalSupplyAssets", "type": "uint128"},
            {"internalType": "uint128", "name": "totalSupplyShares", "type": "uint128"},
            {"internalType": "uint128", "name": "totalBorrowAssets", "type": "uint128"},
            {"internalType": "uint128", "name": "totalBorrowShares", "type": "uint128"},
            {"internalType": "uint128", "name": "lastUpdate", "type": "uint128"},
            {"internalType": "uint128", "name": "fee", "type": "uint128"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]
