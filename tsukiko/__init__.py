import random

from colorama import Fore, Style, init

from tsukiko.common.logger import get_logger

egg = get_logger("小彩蛋")

# (台词, 权重)
GREETINGS = [
    ("月亮今晚也在看直播哦", 10),
    ("弹幕刷屏的那一秒，已经被记进高光里了", 5),
    ("邪恶的 Tsukiko 只是换了一套 system prompt 而已", 2),
]

RAINBOW = [Fore.RED, Fore.YELLOW, Fore.GREEN, Fore.CYAN, Fore.BLUE, Fore.MAGENTA]


def rainbow(text: str) -> str:
    return "".join(RAINBOW[i % len(RAINBOW)] + char for i, char in enumerate(text)) + Style.RESET_ALL


class BaseMain:
    """启动时在控制台随机打一句彩虹色的问候"""

    def __init__(self):
        self.easter_egg()

    @staticmethod
    def easter_egg():
        init()
        lines, weights = zip(*GREETINGS, strict=True)
        egg.info(rainbow(random.choices(lines, weights=weights)[0]))
