"""Options that drive the voxel loop and the preprocessing helpers.

Options can be read from an INI file (``configparser``) or given as a plain
mapping / attribute object. ``mio_opt`` normalises any of these into a
``configuration`` instance with every recognised field populated::

    [GLOBAL]
    output_mode = standard

    [MIO]
    no_parfor = false
    verbose = false
    do_new_parfor = false
    n_workers = 4
    backend = loky

    [MASK]
    thresh = 0.1

    [SMOOTH]
    filter_sigma = 0.0
"""

import configparser
import logging
from collections.abc import Mapping

from mddmri.core.logfmt import DETAIL
from mddmri.core.validation import ConfigurationError


VALID_BACKENDS = ('loky', 'threading', 'multiprocessing', 'sequential')

DEFAULT_OPTIONS = {
    'no_parfor': False,
    'verbose': None,
    'do_new_parfor': False,
    'n_workers': None,
    'backend': 'loky',
    'output_mode': 'standard',
    'mask_thresh': 0.1,
    'filter_sigma': 0.0,
}

# (section, key) -> attribute
_INI_KEYS = {
    ('GLOBAL', 'output_mode'): 'output_mode',
    ('MIO', 'no_parfor'): 'no_parfor',
    ('MIO', 'verbose'): 'verbose',
    ('MIO', 'do_new_parfor'): 'do_new_parfor',
    ('MIO', 'n_workers'): 'n_workers',
    ('MIO', 'backend'): 'backend',
    ('MASK', 'thresh'): 'mask_thresh',
    ('SMOOTH', 'filter_sigma'): 'filter_sigma',
}

_TRUE_STRINGS = {'1', 'true', 'yes', 'on'}
_FALSE_STRINGS = {'0', 'false', 'no', 'off'}


class configuration:
    def __init__(self, cfg_file=None, **overrides) -> None:
        self.cfg_file = cfg_file
        raw = dict(DEFAULT_OPTIONS)
        if cfg_file is not None:
            raw.update(self._read_ini(cfg_file))
        raw.update({k: v for k, v in overrides.items() if k in DEFAULT_OPTIONS})
        self._setup_config(raw)
        pass

    @staticmethod
    def _read_ini(cfg_file: configparser.ConfigParser) -> dict:
        values = {}
        for (section, key), attr in _INI_KEYS.items():
            if cfg_file.has_section(section) and cfg_file.has_option(section, key):
                raw = str(cfg_file.get(section, key)).strip()
                if raw:
                    values[attr] = raw
        return values

    @staticmethod
    def _normalize_output_mode(value) -> str:
        if value is None:
            return 'standard'
        v = str(value).strip().lower()
        if v in {'quiet', 'q'}:
            return 'quiet'
        if v in {'standard', 'std', 'default'}:
            return 'standard'
        if v in {'verbose', 'v'}:
            return 'verbose'
        if v in {'debug', 'dbg'}:
            return 'debug'
        raise ConfigurationError(
            "Invalid output_mode value.\n"
            "Valid options: quiet | standard | verbose | debug\n"
            f"Current value: '{value}'"
        )

    @staticmethod
    def _normalize_flag(name: str, value) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        v = str(value).strip().lower()
        if v in _TRUE_STRINGS:
            return True
        if v in _FALSE_STRINGS:
            return False
        raise ConfigurationError(
            f"Invalid {name} value.\n"
            "Valid options: true | false\n"
            f"Current value: '{value}'"
        )

    @staticmethod
    def _normalize_backend(value) -> str:
        v = str(value).strip().lower()
        if v not in VALID_BACKENDS:
            raise ConfigurationError(
                "Invalid backend value.\n"
                f"Valid options: {' | '.join(VALID_BACKENDS)}\n"
                f"Current value: '{value}'"
            )
        return v

    @staticmethod
    def _normalize_n_workers(value):
        if value is None or (isinstance(value, str) and value.strip().lower() in {'', 'auto', 'none'}):
            return None
        try:
            n = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"n_workers must be a positive integer or 'auto'; got '{value}'"
            ) from None
        if n < 1:
            raise ConfigurationError(f"n_workers must be >= 1; got {n}")
        return n

    @staticmethod
    def _normalize_float(name: str, value, lo=None, hi=None) -> float:
        try:
            x = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{name} must be a number; got '{value}'") from None
        if lo is not None and x < lo:
            raise ConfigurationError(f"{name} must be >= {lo}; got {x}")
        if hi is not None and x > hi:
            raise ConfigurationError(f"{name} must be <= {hi}; got {x}")
        return x

    def _setup_config(self, raw: dict) -> None:
        self._output_mode = self._normalize_output_mode(raw['output_mode'])
        self.no_parfor = self._normalize_flag('no_parfor', raw['no_parfor'])
        self.do_new_parfor = self._normalize_flag('do_new_parfor', raw['do_new_parfor'])

        # verbose follows output_mode unless given explicitly
        if raw['verbose'] is None:
            self.verbose = self._output_mode in {'verbose', 'debug'}
        else:
            self.verbose = self._normalize_flag('verbose', raw['verbose'])

        self.n_workers = self._normalize_n_workers(raw['n_workers'])
        self.backend = self._normalize_backend(raw['backend'])
        self.mask_thresh = self._normalize_float('mask_thresh', raw['mask_thresh'], lo=0.0, hi=1.0)
        self.filter_sigma = self._normalize_float('filter_sigma', raw['filter_sigma'], lo=0.0)

        logging.getLogger().log(
            DETAIL,
            f"Options: no_parfor={self.no_parfor}, do_new_parfor={self.do_new_parfor}, "
            f"verbose={self.verbose}, n_workers={self.n_workers or 'auto'}, backend={self.backend}",
        )

    @property
    def output_mode(self) -> str:
        return str(getattr(self, '_output_mode', 'standard'))

    @property
    def diagnostics_enabled(self) -> bool:
        return self.output_mode == 'debug'

    def as_dict(self) -> dict:
        out = {key: getattr(self, key) for key in DEFAULT_OPTIONS if key != 'output_mode'}
        out['output_mode'] = self.output_mode
        return out

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.as_dict().items())
        return f"configuration({fields})"


def read_config(cfg_path: str) -> configuration:
    """Load options from an INI file on disk."""
    cfg = configparser.ConfigParser()
    read_ok = cfg.read(cfg_path)
    if not read_ok:
        raise FileNotFoundError(
            f"Configuration file not found: {cfg_path}\n"
            f"Please check the path and try again."
        )
    return configuration(cfg)


def mio_opt(opt=None, **overrides) -> configuration:
    """Normalise an options bag into a fully populated `configuration`.

    Accepts None, an existing `configuration`, a `configparser.ConfigParser`,
    a mapping, or any object exposing the option names as attributes. Unknown
    keys are ignored; keyword overrides take precedence.
    """
    if isinstance(opt, configuration):
        if not overrides:
            return opt
        return configuration(opt.cfg_file, **{**opt.as_dict(), **overrides})

    if opt is None:
        return configuration(None, **overrides)

    if isinstance(opt, configparser.ConfigParser):
        return configuration(opt, **overrides)

    if isinstance(opt, Mapping):
        values = dict(opt)
    else:
        values = {key: getattr(opt, key) for key in DEFAULT_OPTIONS if hasattr(opt, key)}

    values.update(overrides)
    return configuration(None, **values)
