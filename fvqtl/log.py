import logging


LOG_FILE = "fvqtl.log"


def setup_logger(name: str = "fvqtl", level: int = logging.INFO):
    """Package logger writing to the console and, once something is logged, to fvqtl.log"""
    logger = logging.getLogger(name)
    logger.setLevel(level)
    # records stop here; callers embedding the package attach their own handlers
    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                  datefmt='%Y-%m-%d %H:%M:%S')

    fh = logging.FileHandler(LOG_FILE, delay=True)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger


def set_verbosity(verbose: bool = False):
    """DEBUG adds the per-step QTL listing of the stepwise search; INFO otherwise."""
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


logger = setup_logger()
