from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import yaml


SERVICE_TYPES = ('radarr', 'sonarr', 'tautulli')

ENGINE_DEFAULTS = {
    'action_retry_attempts': 3,
    'action_retry_backoff': 2.0,
    'action_timeout_seconds': 60.0,
    'min_request_interval_ms': 0.0,
    'max_concurrent_requests': 0,
}


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        import logging
        logging.error(f'Could not read config {path}: {e}')
        return {}
    return data if isinstance(data, dict) else {}


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(key, default)


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    def _section(self, name: str) -> Dict[str, Any]:
        sec = self.cfg.get(name)
        return sec if isinstance(sec, dict) else {}

    # Generic precedence: services[svc] > engine > default
    def get_service_setting(self, service_name: str, key: str, default: Any = None) -> Any:
        service_cfg = self._section('services').get(service_name, {})
        if isinstance(service_cfg, dict) and key in service_cfg:
            return service_cfg[key]
        return self.engine(key, default)

    def engine(self, key: str, default: Any = None) -> Any:
        eng = self._section('engine')
        if key in eng:
            return eng[key]
        return ENGINE_DEFAULTS.get(key, default) if default is None else default

    # Endpoints from env (documented precedence: env-only)
    def service_endpoint(self, service_name: str) -> Dict[str, Optional[str]]:
        upper = service_name.upper()
        return {
            'api_url': _get_env(f'{upper}_URL') or None,
            'api_key': _get_env(f'{upper}_API_KEY') or None,
        }

    def service_names(self) -> List[str]:
        return [name for name, scfg in self._section('services').items() if isinstance(scfg, dict)]

    def service_definition(self, service_name: str) -> Dict[str, Any]:
        scfg = self._section('services').get(service_name)
        scfg = scfg if isinstance(scfg, dict) else {}
        ep = self.service_endpoint(service_name)
        return {
            'name': service_name,
            'kind': str(scfg.get('type') or service_name).lower(),
            'api_url': (ep.get('api_url') or '').rstrip('/'),
            # API key is sourced from environment only (e.g., RADARR_API_KEY)
            'api_key': ep.get('api_key') or '',
            'active': bool(scfg.get('active', False)),
            'library_ids': [str(x) for x in (scfg.get('library_ids') or [])],
        }

    # General settings accessor
    def general(self, key: str, default: Any = None) -> Any:
        return self._section('general').get(key, default)


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    # Engine numeric coercions
    eng = dict(out.get('engine')) if isinstance(out.get('engine'), dict) else {}
    if eng:
        if 'action_retry_attempts' in eng:
            eng['action_retry_attempts'] = max(1, _nz(eng.get('action_retry_attempts'), int, ENGINE_DEFAULTS['action_retry_attempts']))
        for key in ('action_retry_backoff', 'action_timeout_seconds', 'min_request_interval_ms'):
            if key in eng:
                eng[key] = max(0.0, _nz(eng.get(key), float, ENGINE_DEFAULTS[key]))
        if 'max_concurrent_requests' in eng:
            eng['max_concurrent_requests'] = max(0, _nz(eng.get('max_concurrent_requests'), int, 0))
        out['engine'] = eng

    # Services: drop malformed entries, normalise type and library ids
    sv = out.get('services') if isinstance(out.get('services'), dict) else {}
    cleaned: Dict[str, Any] = {}
    for sname, scfg in sv.items():
        if not isinstance(scfg, dict):
            if debug_logging:
                import logging
                logging.warning(f'Ignoring invalid service entry: {sname}')
            continue
        scfg = dict(scfg)
        kind = str(scfg.get('type') or sname).lower()
        if kind not in SERVICE_TYPES:
            if debug_logging:
                import logging
                logging.warning(f'Ignoring service {sname} with unknown type {kind!r}')
            continue
        scfg['type'] = kind
        ids = scfg.get('library_ids')
        if ids is not None and not isinstance(ids, list):
            scfg['library_ids'] = [ids]
        if 'min_request_interval_ms' in scfg:
            scfg['min_request_interval_ms'] = max(0.0, _nz(scfg.get('min_request_interval_ms'), float, 0.0))
        if 'max_concurrent_requests' in scfg:
            scfg['max_concurrent_requests'] = max(0, _nz(scfg.get('max_concurrent_requests'), int, 0))
        cleaned[str(sname)] = scfg
    if 'services' in out:
        out['services'] = cleaned
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Log configuration problems as warnings; never raises."""
    import logging as _lg
    problems = []
    ac = ConfigAccessor(cfg)
    # Service env pairs
    for name in ac.service_names():
        ep = ac.service_endpoint(name)
        url, key = ep.get('api_url'), ep.get('api_key')
        if (url and not key) or (key and not url):
            problems.append(f"Service {name} has partial env config (URL/API_KEY); it will be skipped.")
        elif not url and not key:
            problems.append(f"Service {name} has no {name.upper()}_URL/{name.upper()}_API_KEY in env; it will be skipped.")
    kinds = [ac.service_definition(n)['kind'] for n in ac.service_names()]
    if 'tautulli' not in kinds:
        problems.append('No tautulli service configured; watch-based conditions will never match.')
    for kind in ('radarr', 'sonarr'):
        active = [n for n in ac.service_names() if ac.service_definition(n)['kind'] == kind and ac.service_definition(n)['active']]
        if len(active) > 1:
            problems.append(f"Several active {kind} services ({', '.join(active)}); the first one is used.")
    # Engine sanity
    eng = cfg.get('engine') if isinstance(cfg.get('engine'), dict) else {}
    if float(eng.get('min_request_interval_ms') or 0) > 0 and int(eng.get('max_concurrent_requests') or 0) == 0:
        problems.append('min_request_interval_ms set without max_concurrent_requests; consider setting both for effect.')
    for p in problems:
        _lg.warning(p)
    return problems
