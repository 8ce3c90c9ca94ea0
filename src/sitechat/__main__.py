import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from sitechat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from sitechat.bootstrap import bootstrap_runtime
from sitechat.server import create_app


def main() -> None:
    load_dotenv()

    app_config = parse_app_config(load_json_config())
    env = resolve_runtime_env(app_config.provider_name)

    try:
        runtime = bootstrap_runtime(app_config, env)
    except ValueError as ex:
        logger.error(str(ex))
        sys.exit(1)

    for description in runtime.log_descriptions:
        logger.info(f"Logging to {description}")
    logger.info(
        f"Serving on http://{app_config.host}:{app_config.port} "
        f"(provider={app_config.provider_name}, model={app_config.model})"
    )

    uvicorn.run(
        create_app(runtime),
        host=app_config.host,
        port=app_config.port,
        log_level=app_config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
