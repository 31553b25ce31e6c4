"""Smoke test for a Maestro controller: swings channel 0 between its limits."""

import logging
import time

from pololu_maestro import Controller, TICKS_PER_US, MaestroError

log = logging.getLogger('maestro_sctest')

DEFAULT_PORT = '/dev/ttyACM0'
DEFAULT_DEVICE_NUMBER = 12


def sctest(controller: Controller, channel: int = 0,
           pause_s: float = 2) -> None:
    # Get/clear any initial error code
    error = controller.get_device_error()
    if error:
        log.warning('controller error: %s', error)

    servo = controller.register_channel(channel)
    servo.set_speed(0)
    servo.set_acceleration(0)

    for target_us in (500, 2500):
        log.info('%s -> %d us', servo, target_us)
        servo.set_target(target_us * TICKS_PER_US)
        time.sleep(pause_s)


def main() -> None:
    logging.basicConfig(level=logging.INFO)

    # Get serial port
    try:
        serial_port = input(f'Enter serial port [{DEFAULT_PORT}]: ')
    except KeyboardInterrupt:
        print()
        return

    if not serial_port:
        serial_port = DEFAULT_PORT

    try:
        with Controller(serial_port, timeout=0.5,
                        device_number=DEFAULT_DEVICE_NUMBER,
                        crc=True) as controller:
            sctest(controller)
    except MaestroError as e:
        log.error('error: %s', e)
        raise SystemExit(1)


if __name__ == '__main__':
    main()
