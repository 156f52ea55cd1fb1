import logging

from device_trust_engine import ClientAttributes, DeviceTrustEngine, EngineConfig, RequestObservation

BROWSER = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"


def build_observation(identifier: str = BROWSER, origin: str = "93.184.216.34") -> RequestObservation:
    return RequestObservation(
        origin=origin,
        identifier=identifier,
        attributes=ClientAttributes(
            timezone="Europe/Berlin",
            screen_resolution="1920x1080",
            platform="Win32",
            plugins=("PDF Viewer",),
            fonts=("Arial", "Calibri", "Cambria", "Consolas", "Segoe UI"),
            canvas="c9f1d2e3",
            webgl="ANGLE (NVIDIA GeForce RTX 3060)",
            hardware_concurrency=8,
            device_memory=8.0,
            cookies_enabled=True,
            accept_language="de-DE,de;q=0.9",
        ),
    )


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    config = EngineConfig()
    config.rate_limit.ceiling = 20
    engine = DeviceTrustEngine(config)

    first = engine.evaluate(build_observation(), principal_id="user-42")
    print("First sighting:", first.outcome.value, first.fingerprint, f"trust={first.trust_score:.2f}")

    bot = engine.evaluate(build_observation("python-requests/2.31"))
    print("Scripted client:", bot.outcome.value, bot.flags)

    for _ in range(25):
        flood = engine.evaluate(build_observation(origin="198.51.100.23"))
    print("Flooding origin:", flood.outcome.value, flood.flags, f"trust={flood.trust_score:.2f}")

    engine.block_device(first.fingerprint, reason="chargeback")
    blocked = engine.evaluate(build_observation())
    print("After manual block:", blocked.outcome.value, blocked.flags)

    print("Stats:", engine.stats().as_dict())


if __name__ == "__main__":
    main()
