import configparser

from config import INI_FILE


def _ask(prompt, default=None):
    suffix = f" [{default}]" if default is not None else ""
    return input(f"{prompt}{suffix}: ").strip() or (default or '')


def _ask_int(prompt, default):
    while True:
        raw = _ask(prompt, str(default))
        if raw.isdigit():
            return raw
        print("  Please enter a whole number.")


def run_setup():
    print("Consigna - first time setup")
    print(f"Settings will be written to {INI_FILE}\n")

    config = configparser.ConfigParser()

    # Without a [database] section the server falls back to DATABASE_URL / SQLite
    if _ask("Use MySQL? (y/n)", 'y').lower().startswith('y'):
        config['database'] = {
            'host': _ask("MySQL host", 'localhost'),
            'port': _ask_int("MySQL port", 3306),
            'username': _ask("MySQL user", 'consigna_app'),
            'password': _ask("MySQL password"),
            'database': _ask("Database name", 'consigna'),
        }

    config['app'] = {
        'secret_key': 'AUTO_GENERATED',
        'debug': 'False',
    }

    print("\nDefaults for new agreements")
    config['consignment'] = {
        'settlement_period_days': _ask_int("Settlement period (days)", 30),
        'return_grace_days': _ask_int("Return grace period (days)", 60),
    }

    with open(INI_FILE, 'w') as f:
        config.write(f)

    print(f"\nSaved {INI_FILE}. Start the server with: python run.py")


if __name__ == '__main__':
    run_setup()
