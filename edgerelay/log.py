from datetime import datetime

# Logging helpers
CLR = {
    "RESET":"\033[0m","DEBUG":"\033[90m","INFO":"\033[94m","SUCCESS":"\033[92m",
    "WARNING":"\033[93m","ERROR":"\033[91m","PROCESS":"\033[96m"
}

LEVELS = ("debug", "info", "warning", "error", "none")

# category -> minimum level index at which it is still printed
_CAT_RANK = {"DEBUG": 0, "INFO": 1, "PROCESS": 1, "SUCCESS": 1, "WARNING": 2, "ERROR": 3}

_threshold = 1

def set_level(level: str):
    global _threshold
    level = (level or "info").lower()
    if level not in LEVELS:
        raise ValueError(f"unknown log level '{level}'")
    _threshold = LEVELS.index(level)

def enabled(cat: str) -> bool:
    return _CAT_RANK.get(cat.upper(), 1) >= _threshold

def log(msg, cat="INFO"):
    if not enabled(cat):
        return
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    color = CLR.get(cat.upper(),"")
    end = CLR["RESET"] if color else ""
    print(f"{color}[{ts}] {cat}: {msg}{end}", flush=True)
