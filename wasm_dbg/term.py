# (c) Copyright 2023 Aaron Kimball
#
# Console output: color codes, message priority levels and the print-queue consumers.

import queue
import threading

# Change this flag to enable/disable color formatting.
enable_colors = True

COLOR_WHITE     = '\033[0m'
COLOR_BOLD      = '\033[1m'
COLOR_UNDERLINE = '\033[4m'

COLOR_GRAY      = '\033[90m'
COLOR_RED       = '\033[91m'
COLOR_GREEN     = '\033[92m'
COLOR_YELLOW    = '\033[93m'
COLOR_CYAN      = '\033[96m'

INFO      = COLOR_WHITE
SUCCESS   = COLOR_GREEN
WARN      = COLOR_YELLOW
ERR       = COLOR_RED

COLOR_OFF = COLOR_WHITE


def use_colors():
    """
    Return true if we should use color in formatting output.
    """
    return enable_colors

def set_use_colors(do_use_colors):
    global enable_colors
    enable_colors = bool(do_use_colors)

def fmt(text, color_code=None):
    """
    Return a string wrapped in the codes to enable a certain color, if use_colors is active.
    """
    if use_colors() and color_code is not None:
        return f'{color_code}{text}{COLOR_OFF}'
    else:
        return text

def write(text, color_code=None):
    """
    Print a string, wrapped in color codes if use_colors is active.
    """
    print(fmt(text, color_code))


class MsgLevel(object):
    """
    Priority level codes for messages submitted to the print queue; used to colorize
    messages appropriately.
    """
    INFO        = 0         # Standard message
    TARGET      = 1         # Message relayed from the debugged wasm runtime.
    WARN        = 2         # Warnings; malformed debug info we skipped over, etc.
    ERR         = 3         # Errors
    DEBUG       = 4         # verboseprint() info from the backend.
    SUCCESS     = 5         # Successful.

    @staticmethod
    def color_for_msg(msg_level):
        """
        Return a term color for the message level.
        """
        if msg_level == MsgLevel.TARGET:
            return COLOR_CYAN
        elif msg_level == MsgLevel.WARN:
            return WARN
        elif msg_level == MsgLevel.ERR:
            return ERR
        elif msg_level == MsgLevel.DEBUG:
            return COLOR_GRAY
        elif msg_level == MsgLevel.SUCCESS:
            return SUCCESS
        else:
            return INFO


class ConsolePrinter(object):
    """
    Monitor that drains a queue of (text, MsgLevel) pairs and prints them to the console.
    Any thread may enqueue lines; only the service thread writes to stdout.
    """

    TIMEOUT = 0.250 # Check the liveness flag every 250ms while the queue is idle.

    def __init__(self):
        self.print_q = queue.Queue()
        self._alive = True
        self._thread = threading.Thread(target=self.service, name='Console print thread',
                                        daemon=True)

    def start(self):
        self._thread.start()

    def shutdown(self):
        self.join_q()
        self._alive = False
        self._thread.join()

    def join_q(self):
        """
        Wait for any pending items to be printed and drained from the queue.
        """
        self.print_q.join()

    def _emit(self, textline, prio):
        print(fmt(textline, MsgLevel.color_for_msg(prio)), flush=True)

    def service(self):
        """
        Main service loop for thread. Receive lines to print and print them to stdout.
        """
        while self._alive:
            try:
                (textline, prio) = self.print_q.get(block=True, timeout=ConsolePrinter.TIMEOUT)
            except queue.Empty:
                continue

            try:
                self._emit(textline, prio)
            finally:
                self.print_q.task_done()


class NullPrinter(ConsolePrinter):
    """
    ConsolePrinter implementation that silently discards all text it receives.
    """

    def _emit(self, textline, prio):
        pass
