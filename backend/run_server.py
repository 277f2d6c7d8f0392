"""
Entry point for the preemption worker.

    python run_server.py --host 0.0.0.0 --port 8000
"""
import uvicorn


def main():
    import argparse
    parser = argparse.ArgumentParser(description="vSphere preemption worker")
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=8000)
    parser.add_argument('--log-level', default='info', choices=['debug', 'info', 'warning', 'error'])
    args = parser.parse_args()

    uvicorn.run(
        'preemption.main:app',
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == '__main__':
    main()
