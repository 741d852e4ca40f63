import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

from Assembler import AssemblerError
from Simulator import Simulator, VerificationError
from Storage import load_config

log = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)  # Enable CORS for all routes


@app.route("/simulate", methods=["POST"])
def simulate():
    data = request.get_json(silent=True) or {}
    program = data.get("program")
    if not program:
        return jsonify({"error": "no program given"}), 400

    try:
        config = load_config(overrides=data.get("config"))
        sim = Simulator(config=config, forwarding=data.get("forwarding"))
        sim.load_assembly(program)
        sim.run(verify=bool(data.get("verify", False)))
    except (AssemblerError, ValueError) as e:
        log.info("Rejected simulation request: %s", e)
        return jsonify({"error": str(e)}), 400
    except VerificationError as e:
        log.warning("Verification failed: %s", e)
        return jsonify({"error": str(e)}), 422

    stats = sim.stats()
    return jsonify({
        "clock": sim.clock,
        "ipc": stats["ipc"],
        "stalls": stats["stalls"],
        "stats": stats,
        "registers": sim.registers,
        "records": [rec.to_dict() for rec in sim.records],
    })


if __name__ == "__main__":
    app.run(debug=True)
