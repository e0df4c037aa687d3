import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sqlalchemy import text
from parkspot.core.config import get_settings
from parkspot.db import build_engine


def main() -> int:
    cfg = get_settings()
    engine = build_engine(cfg)
    print('dialect:', engine.dialect.name)
    print('url:', engine.url.render_as_string(hide_password=True))
    missing = cfg.missing_required()
    print('missing config:', ', '.join(missing) if missing else 'none')
    ok = not missing
    with engine.begin() as conn:
        try:
            conn.execute(text('SELECT 1'))
            print('db: ok')
        except Exception as e:
            print('db error:', e)
            return 1
        if engine.dialect.name == 'postgresql':
            profiles = conn.execute(text("SELECT to_regclass('public.profiles')")).scalar()
        else:
            profiles = conn.execute(
                text("SELECT name FROM sqlite_master WHERE type='table' AND name='profiles'")
            ).scalar()
        print('profiles table:', bool(profiles))
        ok = ok and bool(profiles)
        if profiles:
            rows = conn.execute(
                text(
                    "SELECT subscription_status, COUNT(*) FROM profiles "
                    "GROUP BY subscription_status ORDER BY subscription_status"
                )
            ).all()
            for status, count in rows:
                print(f'  {status}: {count}')
    return 0 if ok else 1


if __name__ == '__main__':
    raise SystemExit(main())
