import os

import uvicorn

from campusfix.server.app import create_app


def main() -> None:
    uvicorn.run(
        create_app(),
        host=os.environ.get('CAMPUSFIX_HOST', '127.0.0.1'),
        port=int(os.environ.get('CAMPUSFIX_PORT', '8000')),
    )


if __name__ == '__main__':
    main()
