# scripts/mint_token.py
import argparse  # parse CLI args
import os  # read environment variables

from ticketdesk.security import mint_principal_token  # sign a principal token


def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser()  # CLI parser
    parser.add_argument("--sub", required=True)  # user or organizer id
    parser.add_argument("--role", required=True, choices=["participant", "organizer"])  # principal role
    parser.add_argument("--name", default="")  # display name shown on tickets
    parser.add_argument("--email", default="")  # where confirmations go
    parser.add_argument("--participant-type", choices=["iiit", "non-iiit"])  # eligibility group
    parser.add_argument("--ttl-minutes", type=int, default=60)  # token lifetime
    args = parser.parse_args()  # parse args

    secret = os.environ.get("TICKET_SIGNING_SECRET", "dev_secret_change_me")  # signing secret

    claims = {"name": args.name, "email": args.email}  # profile claims
    if args.participant_type:  # only participants carry a type
        claims["participant_type"] = args.participant_type

    token = mint_principal_token(args.sub, args.role, secret, ttl_minutes=args.ttl_minutes, **claims)  # sign token
    print(token)  # output token to stdout


if __name__ == "__main__":  # run as script
    main()  # call main
